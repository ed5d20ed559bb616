"""
Already-parsed, overload-resolved expression trees handed to builder inference.

Parsing and symbol resolution happen elsewhere; by the time a tree reaches the
engine every call node already carries the signature it resolved to. Nodes may
expose a ``static_type`` when the provider knows it independently of any
postponed variable (outer locals, literals, already-checked sub-expressions).

Member signatures carry their owner's type as ``receiver`` (``ItemHolder<T>``
for ``ItemHolder.addItem``), exactly like extension functions do; the two only
differ in the ``extension`` flag. Instantiating either is the same structural
match of the declared receiver against the actual one.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from type_model import (
    UNIT, Concrete, DeclaredType, FunctionType, SourcePosition, TypeParameter, iter_components
)


class Visibility(Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    PROTECTED = "protected"
    PRIVATE = "private"


@dataclass(frozen=True)
class Parameter:
    name: str
    type: DeclaredType


@dataclass(frozen=True)
class FunctionSignature:
    """A resolved function, member function or extension function.

    Attributes:
        name: Function name
        parameters: Value parameters in declaration order
        return_type: Declared return type
        type_parameters: The function's own type parameters
        receiver: Declared receiver type for members and extensions, None for top-level functions
        extension: Whether this is an extension rather than a member
        visibility: Declared visibility
    """

    name: str
    parameters: Tuple[Parameter, ...] = ()
    return_type: DeclaredType = UNIT
    type_parameters: Tuple[TypeParameter, ...] = ()
    receiver: Optional[DeclaredType] = None
    extension: bool = False
    visibility: Visibility = Visibility.PUBLIC

    def __post_init__(self):
        object.__setattr__(self, "parameters", tuple(self.parameters))
        object.__setattr__(self, "type_parameters", tuple(self.type_parameters))

    @property
    def accessible(self) -> bool:
        return self.visibility != Visibility.PRIVATE

    def signature_types(self) -> List[DeclaredType]:
        """Parameter and return types (the receiver excluded)."""
        return [p.type for p in self.parameters] + [self.return_type]

    def mentions(self, parameter: TypeParameter) -> bool:
        """Whether any parameter or the return type mentions ``parameter``."""
        return any(
            isinstance(component, TypeParameter) and component.key == parameter.key
            for t in self.signature_types()
            for component in iter_components(t)
        )

    def __str__(self):
        params = ", ".join(f"{p.name}: {p.type}" for p in self.parameters)
        prefix = f"{self.receiver}." if self.receiver is not None else ""
        return f"fun {prefix}{self.name}({params}): {self.return_type}"


@dataclass(frozen=True)
class PropertySignature:
    """A resolved member or extension property."""

    name: str
    type: DeclaredType
    receiver: Optional[DeclaredType] = None
    type_parameters: Tuple[TypeParameter, ...] = ()
    extension: bool = False
    visibility: Visibility = Visibility.PUBLIC

    @property
    def accessible(self) -> bool:
        return self.visibility != Visibility.PRIVATE

    def signature_types(self) -> List[DeclaredType]:
        return [self.type]

    def mentions(self, parameter: TypeParameter) -> bool:
        return any(
            isinstance(component, TypeParameter) and component.key == parameter.key
            for component in iter_components(self.type)
        )


Operation = Union[FunctionSignature, PropertySignature]


@dataclass(frozen=True)
class ClassDeclaration:
    """A generic class and its members, e.g. ``class ItemHolder<T>``."""

    name: str
    type_parameters: Tuple[TypeParameter, ...] = ()
    members: Tuple[Operation, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "type_parameters", tuple(self.type_parameters))
        object.__setattr__(self, "members", tuple(self.members))

    @property
    def type(self) -> Concrete:
        """The class applied to its own type parameters."""
        return Concrete(self.name, self.type_parameters)

    def member(self, name: str) -> Operation:
        for member in self.members:
            if member.name == name:
                return member
        raise KeyError(f"{self.name} has no member {name!r}")


class DeclarationIndex:
    """The classes and extensions visible at a call site."""

    def __init__(self, classes: Iterable[ClassDeclaration] = (), extensions: Iterable[Operation] = ()):
        self._classes: Dict[str, ClassDeclaration] = {c.name: c for c in classes}
        self._extensions: List[Operation] = list(extensions)

    def class_declaration(self, name: str) -> Optional[ClassDeclaration]:
        return self._classes.get(name)

    def operations_on(self, name: str) -> List[Operation]:
        """Members of ``name`` plus extensions declared directly on it."""
        operations: List[Operation] = []
        declaration = self.class_declaration(name)
        if declaration is not None:
            operations.extend(declaration.members)
        for extension in self._extensions:
            receiver = extension.receiver
            if isinstance(receiver, Concrete) and receiver.name == name:
                operations.append(extension)
        return operations


# =============================================================================
# Expression nodes
# =============================================================================

@dataclass(eq=False)
class Expression:
    """Base node. Identity-compared: each node object occurs once in a tree."""

    position: Optional[SourcePosition] = field(default=None, kw_only=True)
    static_type: Optional[Concrete] = field(default=None, kw_only=True)

    def describe(self) -> str:
        return type(self).__name__


@dataclass(eq=False)
class Literal(Expression):
    """A literal such as ``1`` (Int) or ``"key"`` (String)."""

    type: Concrete
    text: str = ""

    def describe(self) -> str:
        return self.text or f"<{self.type} literal>"


@dataclass(eq=False)
class LocalReference(Expression):
    """A read of a local variable or a lambda parameter (``it``)."""

    name: str

    def describe(self) -> str:
        return self.name


@dataclass(eq=False)
class ThisReference(Expression):
    """The innermost lambda receiver."""

    def describe(self) -> str:
        return "this"


@dataclass(eq=False)
class Call(Expression):
    """A call to an already-resolved signature.

    ``receiver`` is None for implicit-receiver calls (``add(1)`` inside a
    builder) and for top-level functions.
    """

    signature: FunctionSignature
    arguments: List[Expression] = field(default_factory=list)
    receiver: Optional[Expression] = None
    type_arguments: Dict[str, Concrete] = field(default_factory=dict)

    def describe(self) -> str:
        prefix = f"{self.receiver.describe()}." if self.receiver is not None else ""
        return f"{prefix}{self.signature.name}(...)"


@dataclass(eq=False)
class PropertyAccess(Expression):
    property: PropertySignature
    receiver: Optional[Expression] = None

    def describe(self) -> str:
        prefix = f"{self.receiver.describe()}." if self.receiver is not None else ""
        return f"{prefix}{self.property.name}"


@dataclass(eq=False)
class CallableReference(Expression):
    """A member or function reference such as ``::get``."""

    signature: FunctionSignature
    receiver: Optional[Expression] = None

    def describe(self) -> str:
        prefix = self.receiver.describe() if self.receiver is not None else ""
        return f"{prefix}::{self.signature.name}"


@dataclass(eq=False)
class VariableDeclaration(Expression):
    """``val name: declared_type = initializer``."""

    name: str
    initializer: Optional[Expression] = None
    declared_type: Optional[Concrete] = None

    def describe(self) -> str:
        suffix = f": {self.declared_type}" if self.declared_type is not None else ""
        return f"val {self.name}{suffix}"


@dataclass(eq=False)
class Assignment(Expression):
    """``name = value`` for an already declared local."""

    name: str
    value: Expression

    def describe(self) -> str:
        return f"{self.name} = {self.value.describe()}"


@dataclass(eq=False)
class Comparison(Expression):
    """A binary comparison; ordering operators constrain, equality does not."""

    left: Expression
    right: Expression
    operator: str = "<"

    ORDERING_OPERATORS = frozenset({"<", "<=", ">", ">="})

    @property
    def is_ordering(self) -> bool:
        return self.operator in self.ORDERING_OPERATORS

    def describe(self) -> str:
        return f"{self.left.describe()} {self.operator} {self.right.describe()}"


@dataclass(eq=False)
class Conditional(Expression):
    """``if (condition) { then_branch } else { else_branch }``."""

    condition: Expression
    then_branch: List[Expression] = field(default_factory=list)
    else_branch: List[Expression] = field(default_factory=list)

    def describe(self) -> str:
        return f"if ({self.condition.describe()})"


@dataclass(eq=False)
class LambdaLiteral(Expression):
    """A lambda; its last expression is its result.

    With no explicit parameter names, a single-parameter function type binds
    its parameter to ``it``.
    """

    body: List[Expression] = field(default_factory=list)
    parameter_names: Tuple[str, ...] = ()

    def describe(self) -> str:
        return "{ ... }"


@dataclass(eq=False)
class CallSite:
    """A generic call whose type arguments are to be inferred.

    Attributes:
        callee: The resolved generic function
        arguments: Argument expressions, one per callee parameter
        explicit_type_arguments: Type arguments written at the call, by parameter name
        expected_type: The type the call's result is expected to have, if known
        enclosing_locals: Types of the locals visible from the lambda bodies
        declarations: Classes and extensions visible at the call
        position: Where the call appears
    """

    callee: FunctionSignature
    arguments: List[Expression] = field(default_factory=list)
    explicit_type_arguments: Dict[str, Concrete] = field(default_factory=dict)
    expected_type: Optional[Concrete] = None
    enclosing_locals: Dict[str, Concrete] = field(default_factory=dict)
    declarations: DeclarationIndex = field(default_factory=DeclarationIndex)
    position: Optional[SourcePosition] = None

    def describe(self) -> str:
        location = f" at {self.position}" if self.position is not None else ""
        return f"{self.callee.name}{location}"

    def builder_parameter(self, index: int) -> Optional[FunctionType]:
        """The declared function type of parameter ``index`` if it has a receiver."""
        if index >= len(self.callee.parameters):
            return None
        parameter_type = self.callee.parameters[index].type
        if isinstance(parameter_type, FunctionType) and parameter_type.receiver is not None:
            return parameter_type
        return None


def static_type_of(expression: Expression, enclosing_locals: Mapping[str, Concrete]) -> Optional[Concrete]:
    """Type of an expression as known without builder inference, if any."""
    if isinstance(expression, Literal):
        return expression.type
    if isinstance(expression, LocalReference) and expression.name in enclosing_locals:
        return enclosing_locals[expression.name]
    return expression.static_type
