"""
Type model shared by every stage of builder type inference.

This module provides the structural representation of types that the lattice,
the constraint collector and the resolver all operate on:

- Concrete: a nominal type with ordered type arguments and a nullability flag
- Variable: a postponed type variable owned by exactly one inference session
- TypeParameter: a declared type parameter as it appears in signatures
- FunctionType: the declared type of a lambda parameter (optionally with receiver)

Key concepts:
- Nullability is a flag on the type itself; ``T?`` is ``Variable(..., nullable=True)``
- Function values are nominal: ``Function2<A, B, R>`` takes A, B and returns R
- Substitution replaces variables by their resolved types, propagating ``?``
"""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple, Union


class Variance(Enum):
    """Declaration-site variance of a type parameter."""
    COVARIANT = "covariant"          # out T: C<Sub> <: C<Super>
    CONTRAVARIANT = "contravariant"  # in T:  C<Super> <: C<Sub>
    INVARIANT = "invariant"          # T:     C<X> <: C<Y> only when X == Y

    @classmethod
    def from_keyword(cls, keyword: str) -> "Variance":
        """Map the ``out``/``in`` declaration keywords to a variance."""
        keyword = (keyword or "").strip().lower()
        if keyword in ("out", "covariant"):
            return cls.COVARIANT
        if keyword in ("in", "contravariant"):
            return cls.CONTRAVARIANT
        if keyword in ("", "invariant"):
            return cls.INVARIANT
        raise ValueError(f"Unknown variance keyword: {keyword!r}")


@dataclass(frozen=True)
class Concrete:
    """A fully resolved nominal type, e.g. ``Map<String, Int>?``.

    Attributes:
        name: The nominal type constructor
        type_arguments: Ordered type arguments (may hold variables while a session is live)
        nullable: Whether ``null`` inhabits the type
    """

    name: str
    type_arguments: Tuple["Type", ...] = ()
    nullable: bool = False

    def __post_init__(self):
        object.__setattr__(self, "type_arguments", tuple(self.type_arguments))

    def with_nullability(self, nullable: bool) -> "Concrete":
        if nullable == self.nullable:
            return self
        return replace(self, nullable=nullable)

    def non_null(self) -> "Concrete":
        return self.with_nullability(False)

    def __str__(self):
        text = self.name
        if self.type_arguments:
            text += "<" + ", ".join(str(arg) for arg in self.type_arguments) + ">"
        return text + "?" if self.nullable else text


# Universal types of every hierarchy
ANY = Concrete("Any")
NULLABLE_ANY = Concrete("Any", nullable=True)
NOTHING = Concrete("Nothing")
UNIT = Concrete("Unit")
BOOLEAN = Concrete("Boolean")


@dataclass(frozen=True)
class TypeParameter:
    """A declared type parameter, e.g. the ``T`` of ``class ItemHolder<T>``.

    ``owner`` names the declaring class or function so that two parameters both
    called ``T`` never collide during instantiation.
    """

    name: str
    owner: str = ""
    upper_bound: Concrete = NULLABLE_ANY
    variance: Variance = Variance.INVARIANT
    nullable: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.owner, self.name)

    def with_nullability(self, nullable: bool) -> "TypeParameter":
        if nullable == self.nullable:
            return self
        return replace(self, nullable=nullable)

    def __str__(self):
        return self.name + ("?" if self.nullable else "")


@dataclass(frozen=True)
class Variable:
    """A postponed type variable.

    Identity is ``(session_id, id)``; the owning session is fixed at creation.
    ``nullable=True`` denotes the projection ``T?`` of the same variable.
    """

    id: int
    name: str
    session_id: int
    upper_bound: Concrete = NULLABLE_ANY
    nullable: bool = False

    @property
    def key(self) -> Tuple[int, int]:
        return (self.session_id, self.id)

    def with_nullability(self, nullable: bool) -> "Variable":
        if nullable == self.nullable:
            return self
        return replace(self, nullable=nullable)

    def non_null(self) -> "Variable":
        return self.with_nullability(False)

    def __str__(self):
        return f"{self.name}#{self.id}" + ("?" if self.nullable else "")


@dataclass(frozen=True)
class FunctionType:
    """Declared type of a lambda parameter: ``Receiver.(P1, P2) -> R``."""

    parameter_types: Tuple["DeclaredType", ...] = ()
    return_type: "DeclaredType" = UNIT
    receiver: Optional["DeclaredType"] = None

    def __post_init__(self):
        object.__setattr__(self, "parameter_types", tuple(self.parameter_types))

    def __str__(self):
        params = ", ".join(str(p) for p in self.parameter_types)
        prefix = f"{self.receiver}." if self.receiver is not None else ""
        return f"{prefix}({params}) -> {self.return_type}"


# Types that may appear during inference
Type = Union[Concrete, Variable]
# Types that may appear in declarations
DeclaredType = Union[Concrete, Variable, TypeParameter, FunctionType]


_FUNCTION_NAME = re.compile(r"^Function(\d+)$")


def function_type(parameter_types, return_type) -> Concrete:
    """Build the nominal function type ``Function<n><P1..Pn, R>``."""
    parameter_types = tuple(parameter_types)
    return Concrete(f"Function{len(parameter_types)}", parameter_types + (return_type,))


def function_arity(name: str) -> Optional[int]:
    """Return the parameter count if ``name`` is a nominal function type, else None."""
    match = _FUNCTION_NAME.match(name)
    return int(match.group(1)) if match else None


def make_nullable(t: DeclaredType) -> DeclaredType:
    """Return the ``?`` projection of a type."""
    if isinstance(t, (Concrete, Variable, TypeParameter)):
        return t.with_nullability(True)
    return t


def iter_components(t: DeclaredType) -> Iterator[DeclaredType]:
    """Yield ``t`` and every type nested inside it, depth first."""
    yield t
    if isinstance(t, Concrete):
        for arg in t.type_arguments:
            yield from iter_components(arg)
    elif isinstance(t, FunctionType):
        if t.receiver is not None:
            yield from iter_components(t.receiver)
        for param in t.parameter_types:
            yield from iter_components(param)
        yield from iter_components(t.return_type)


def variables_in(t: DeclaredType) -> List[Variable]:
    """Collect the (non-null) variables occurring in a type, in first-seen order."""
    seen = {}
    for component in iter_components(t):
        if isinstance(component, Variable) and component.key not in seen:
            seen[component.key] = component.non_null()
    return list(seen.values())


def contains_variables(t: DeclaredType) -> bool:
    """Check if a type still mentions any postponed variable."""
    return any(isinstance(c, Variable) for c in iter_components(t))


def type_parameters_in(t: DeclaredType) -> List[TypeParameter]:
    """Collect the (non-null) declared type parameters occurring in a type."""
    seen = {}
    for component in iter_components(t):
        if isinstance(component, TypeParameter) and component.key not in seen:
            seen[component.key] = component.with_nullability(False)
    return list(seen.values())


def mentions_type_parameter(t: DeclaredType, parameter: TypeParameter) -> bool:
    return any(p.key == parameter.key for p in type_parameters_in(t))


def substitute(t: DeclaredType, bindings: Dict[Tuple[int, int], Type]) -> DeclaredType:
    """Substitute postponed variables by their bindings.

    Variables without a binding are left in place. A nullable occurrence ``T?``
    becomes the nullable projection of its binding.
    """
    if isinstance(t, Variable):
        if t.key not in bindings:
            return t
        bound = bindings[t.key]
        return make_nullable(bound) if t.nullable else bound

    if isinstance(t, Concrete):
        if not t.type_arguments:
            return t
        return Concrete(
            t.name,
            tuple(substitute(arg, bindings) for arg in t.type_arguments),
            t.nullable,
        )

    if isinstance(t, FunctionType):
        return FunctionType(
            tuple(substitute(p, bindings) for p in t.parameter_types),
            substitute(t.return_type, bindings),
            substitute(t.receiver, bindings) if t.receiver is not None else None,
        )

    return t


def instantiate(
    t: DeclaredType,
    mapping: Dict[Tuple[str, str], Type],
    erase_unmapped: bool = True,
) -> DeclaredType:
    """Replace declared type parameters by the types they are instantiated with.

    Unmapped parameters are erased to their declared upper bound unless
    ``erase_unmapped`` is False, in which case they are kept as-is.
    """
    if isinstance(t, TypeParameter):
        if t.key in mapping:
            target = mapping[t.key]
        elif erase_unmapped:
            target = t.upper_bound
        else:
            return t
        return make_nullable(target) if t.nullable else target

    if isinstance(t, Concrete):
        if not t.type_arguments:
            return t
        return Concrete(
            t.name,
            tuple(instantiate(arg, mapping, erase_unmapped) for arg in t.type_arguments),
            t.nullable,
        )

    if isinstance(t, FunctionType):
        return FunctionType(
            tuple(instantiate(p, mapping, erase_unmapped) for p in t.parameter_types),
            instantiate(t.return_type, mapping, erase_unmapped),
            instantiate(t.receiver, mapping, erase_unmapped) if t.receiver is not None else None,
        )

    return t


def match_type_parameters(
    declared: DeclaredType,
    actual: DeclaredType,
    bindings: Dict[Tuple[str, str], Type],
    candidates: Optional[set] = None,
) -> bool:
    """Match a declared type structure against an actual type, binding parameters.

    Only parameters whose key is in ``candidates`` (all parameters when None) are
    bound. Existing bindings are never overwritten. Returns True if any new
    binding was made.

    - Direct parameter: ``T`` against ``Int`` binds ``T = Int``
    - Nullable parameter: ``T?`` against ``String?`` binds ``T = String``
    - Same constructor: arguments are matched pairwise
    """
    if isinstance(declared, TypeParameter):
        if candidates is not None and declared.key not in candidates:
            return False
        if declared.key in bindings:
            return False
        if isinstance(actual, (Concrete, Variable)):
            target = actual.with_nullability(False) if declared.nullable else actual
            bindings[declared.key] = target
            return True
        return False

    if isinstance(declared, Concrete) and isinstance(actual, Concrete):
        if declared.name != actual.name or len(declared.type_arguments) != len(actual.type_arguments):
            return False
        found = False
        for declared_arg, actual_arg in zip(declared.type_arguments, actual.type_arguments):
            if match_type_parameters(declared_arg, actual_arg, bindings, candidates):
                found = True
        return found

    return False


@dataclass(frozen=True)
class SourcePosition:
    """A location in the source the expression tree was built from."""

    line: int = 0
    column: int = 0
    source_file: Optional[str] = None

    def __str__(self):
        prefix = f"{self.source_file}:" if self.source_file else ""
        return f"{prefix}{self.line}:{self.column}"


@dataclass(frozen=True)
class Provenance:
    """Where a piece of evidence came from.

    Attributes:
        description: Human-readable description of the originating expression
        position: Source position, when the provider supplied one
        order: Emission order within the session (for stable diagnostics)
    """

    description: str
    position: Optional[SourcePosition] = None
    order: int = field(default=0, compare=False)

    def __str__(self):
        if self.position is not None:
            return f"{self.description} at {self.position}"
        return self.description
