"""
Constraint collection over builder lambda bodies.

The collector types every expression of every builder lambda in terms of the
session's postponed variables and records subtype/equality evidence:

1. Argument passing: ``arg <: param``, decomposed structurally by variance
2. Declarations and assignments: ``v == T`` for a non-null declared type,
   ``v <: T`` when the declared type or the value is nullable
3. Ordering comparisons against a known type: ``v <: T``
4. Explicit receivers of variable type: ``v <: R`` for an operation declared on ``R``
5. A lambda's last expression against its declared return type

Universal operations (``equals``, ``hashCode``, ``toString``) never constrain.
Every node is visited exactly once; a node reachable twice is rejected.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from errors import MalformedTreeError
from expression_tree import (
    Assignment, Call, CallableReference, Comparison, Conditional, Expression, FunctionSignature,
    LambdaLiteral, Literal, LocalReference, PropertyAccess, ThisReference, VariableDeclaration
)
from inference_session import ConstraintKind, InferenceSession
from settings import InferenceSettings
from type_lattice import TypeLattice
from type_model import (
    BOOLEAN, NOTHING, UNIT, Concrete, DeclaredType, FunctionType, Provenance, Type, TypeParameter,
    Variable, Variance, contains_variables, function_type, instantiate, match_type_parameters
)

logger = logging.getLogger(__name__)


@dataclass
class _Scope:
    """Locals and implicit receivers visible at a point of a lambda body."""

    locals: Dict[str, Type] = field(default_factory=dict)
    receivers: List[Type] = field(default_factory=list)

    def child(self, receiver: Optional[Type] = None) -> "_Scope":
        receivers = self.receivers + [receiver] if receiver is not None else list(self.receivers)
        return _Scope(dict(self.locals), receivers)

    def lookup(self, name: str) -> Optional[Type]:
        return self.locals.get(name)


class ConstraintCollector:
    """Walks the builder lambdas of one session and fills it with constraints."""

    def __init__(self, session: InferenceSession, lattice: TypeLattice,
                 settings: Optional[InferenceSettings] = None):
        self.session = session
        self.lattice = lattice
        self.settings = settings or InferenceSettings()
        self._visited: Set[int] = set()

    def collect(self) -> InferenceSession:
        call_site = self.session.call_site
        outer = _Scope(dict(call_site.enclosing_locals))
        for index in self.session.builder_arguments:
            literal = call_site.arguments[index]
            function = self.session.builder_function_type(index)
            self._collect_lambda(literal, function, outer, f"builder argument #{index} of {call_site.callee.name}")
        logger.debug(
            f"session {self.session.session_id}: collected {len(self.session.constraints)} constraints "
            f"from {len(self._visited)} nodes"
        )
        return self.session

    # =========================================================================
    # Typing
    # =========================================================================

    def _collect_lambda(self, literal: Expression, function: FunctionType, scope: _Scope, description: str):
        if not isinstance(literal, LambdaLiteral):
            return
        self._mark_visited(literal)
        inner = scope.child(function.receiver)
        names = literal.parameter_names
        if not names and len(function.parameter_types) == 1:
            names = ("it",)
        for name, parameter_type in zip(names, function.parameter_types):
            inner.locals[name] = parameter_type

        result = None
        for statement in literal.body:
            result = self._type_of(statement, inner)

        # The last expression is the lambda's result
        if literal.body and result is not None and function.return_type != UNIT:
            last = literal.body[-1]
            self._subtype(result, function.return_type, self._provenance(last, f"result of {description}"))

    def _type_of(self, expression: Expression, scope: _Scope) -> Optional[Type]:
        """Static type of ``expression`` in terms of session variables, emitting constraints on the way."""
        self._mark_visited(expression)

        if isinstance(expression, Literal):
            return expression.type

        if isinstance(expression, LocalReference):
            found = scope.lookup(expression.name)
            return found if found is not None else expression.static_type

        if isinstance(expression, ThisReference):
            return scope.receivers[-1] if scope.receivers else expression.static_type

        if isinstance(expression, Call):
            return self._type_of_call(expression, scope)

        if isinstance(expression, PropertyAccess):
            return self._type_of_property(expression, scope)

        if isinstance(expression, CallableReference):
            return self._type_of_reference(expression, scope)

        if isinstance(expression, VariableDeclaration):
            value = self._type_of(expression.initializer, scope) if expression.initializer is not None else None
            if expression.declared_type is not None:
                if value is not None:
                    self._declared(value, expression.declared_type,
                                   self._provenance(expression, expression.describe()))
                scope.locals[expression.name] = expression.declared_type
            elif value is not None:
                scope.locals[expression.name] = value
            return None

        if isinstance(expression, Assignment):
            value = self._type_of(expression.value, scope)
            target = scope.lookup(expression.name)
            if value is not None and target is not None:
                self._declared(value, target, self._provenance(expression, expression.describe()))
            return None

        if isinstance(expression, Comparison):
            self._collect_comparison(expression, scope)
            return BOOLEAN

        if isinstance(expression, Conditional):
            self._type_of(expression.condition, scope)
            for branch in (expression.then_branch, expression.else_branch):
                branch_scope = scope.child()
                for statement in branch:
                    self._type_of(statement, branch_scope)
            return None

        if isinstance(expression, LambdaLiteral):
            # A lambda outside any argument position: type its body for evidence only
            self._collect_lambda(expression, FunctionType(), scope, "lambda literal")
            return expression.static_type

        return expression.static_type

    def _mark_visited(self, expression: Expression):
        if id(expression) in self._visited:
            raise MalformedTreeError(
                f"Expression {expression.describe()} is reachable twice in {self.session.call_site.describe()}"
            )
        self._visited.add(id(expression))

    # =========================================================================
    # Calls, properties and references
    # =========================================================================

    def _receiver_type(self, declared: Optional[DeclaredType], explicit: Optional[Expression],
                       scope: _Scope) -> Optional[Type]:
        if explicit is not None:
            return self._type_of(explicit, scope)
        if declared is None:
            return None
        # Implicit receiver: the innermost one the operation is declared on
        if isinstance(declared, Concrete):
            for receiver in reversed(scope.receivers):
                if isinstance(receiver, Concrete) and self.lattice.hierarchy.is_nominal_subtype(
                        receiver.name, declared.name):
                    return receiver
        return None

    def _bind_receiver(self, name: str, declared: Optional[DeclaredType], receiver: Optional[Type],
                       mapping: Dict, expression: Expression):
        """Bind the receiver's type parameters, or constrain a variable-typed receiver."""
        if declared is None or receiver is None:
            if isinstance(receiver, Variable):
                self._record_usage(receiver, name, expression)
            return

        if isinstance(receiver, Variable):
            if name in self.settings.universal_operations:
                return
            self._record_usage(receiver, name, expression)
            bound = instantiate(declared, mapping)
            self._subtype(receiver, bound, self._provenance(expression, f"receiver of {name}"))
            return

        if isinstance(declared, Concrete) and isinstance(receiver, Concrete):
            viewed = self.lattice.upcast(receiver.non_null(), declared.name)
            if viewed is not None:
                match_type_parameters(declared.non_null(), viewed, mapping)

    def _type_of_call(self, call: Call, scope: _Scope) -> Optional[Type]:
        signature = call.signature
        mapping: Dict = {}

        for parameter in signature.type_parameters:
            if parameter.name in call.type_arguments:
                mapping[parameter.key] = call.type_arguments[parameter.name]

        receiver = self._receiver_type(signature.receiver, call.receiver, scope)
        self._bind_receiver(signature.name, signature.receiver, receiver, mapping, call)

        # Non-lambda arguments first; lambda parameter types depend on the instantiation
        argument_types: List[Optional[Type]] = [
            None if isinstance(argument, LambdaLiteral) else self._type_of(argument, scope)
            for argument in call.arguments
        ]
        own = {p.key for p in signature.type_parameters}
        for parameter, argument_type in zip(signature.parameters, argument_types):
            if argument_type is not None:
                match_type_parameters(parameter.type, argument_type, mapping, own)

        for parameter, argument, argument_type in zip(signature.parameters, call.arguments, argument_types):
            parameter_type = instantiate(parameter.type, mapping)
            if isinstance(argument, LambdaLiteral):
                if isinstance(parameter_type, FunctionType):
                    self._collect_lambda(argument, parameter_type, scope,
                                         f"lambda argument '{parameter.name}' of {signature.name}")
                else:
                    self._collect_lambda(argument, FunctionType(), scope, "lambda literal")
                continue
            if argument_type is not None:
                self._subtype(argument_type, _as_nominal(parameter_type),
                              self._provenance(argument, f"argument '{parameter.name}' of {signature.name}"))

        return instantiate(signature.return_type, mapping)

    def _type_of_property(self, access: PropertyAccess, scope: _Scope) -> Optional[Type]:
        prop = access.property
        mapping: Dict = {}
        receiver = self._receiver_type(prop.receiver, access.receiver, scope)
        self._bind_receiver(prop.name, prop.receiver, receiver, mapping, access)
        return instantiate(prop.type, mapping)

    def _type_of_reference(self, reference: CallableReference, scope: _Scope) -> Optional[Type]:
        """``::get`` on ``MutableList<T>`` becomes ``Function1<Int, T>``."""
        signature: FunctionSignature = reference.signature
        mapping: Dict = {}
        receiver = self._receiver_type(signature.receiver, reference.receiver, scope)
        self._bind_receiver(signature.name, signature.receiver, receiver, mapping, reference)
        parameters = [instantiate(p.type, mapping) for p in signature.parameters]
        if any(isinstance(p, FunctionType) for p in parameters):
            return reference.static_type
        return_type = instantiate(signature.return_type, mapping)
        if isinstance(return_type, FunctionType):
            return reference.static_type
        return function_type(parameters, return_type)

    def _collect_comparison(self, comparison: Comparison, scope: _Scope):
        left = self._type_of(comparison.left, scope)
        right = self._type_of(comparison.right, scope)
        if not comparison.is_ordering:
            return
        provenance = self._provenance(comparison, comparison.describe())
        for operand, other in ((left, right), (right, left)):
            if isinstance(operand, Variable) and isinstance(other, Concrete) and not contains_variables(other):
                self._subtype(operand, other, provenance)

    def _record_usage(self, variable: Variable, name: str, expression: Expression):
        if name in self.settings.universal_operations:
            return
        self.session.record_usage(variable, self._provenance(expression, f"use of {name}"))

    # =========================================================================
    # Constraint emission and structural decomposition
    # =========================================================================

    def _declared(self, value: Type, declared: Type, provenance: Provenance):
        """A value flowing into a declared slot (``val x: T = value`` / ``x = value``)."""
        value, declared = _as_nominal(value), _as_nominal(declared)
        if not isinstance(value, (Concrete, Variable)) or not isinstance(declared, (Concrete, Variable)):
            return
        if isinstance(declared, Variable) and not isinstance(value, Variable):
            self._subtype(value, declared, provenance)
        elif declared.nullable or value.nullable:
            # Only ``v <: T`` is sound when null may flow
            self._subtype(value, declared, provenance)
        elif isinstance(value, Variable) or (isinstance(declared, Concrete) and isinstance(value, Concrete)
                                             and value.name == declared.name):
            self._equal(value, declared, provenance)
        else:
            self._subtype(value, declared, provenance)

    def _subtype(self, sub: DeclaredType, sup: DeclaredType, provenance: Provenance):
        if isinstance(sub, (FunctionType, TypeParameter)) or isinstance(sup, (FunctionType, TypeParameter)):
            return
        if not contains_variables(sub) and not contains_variables(sup):
            # Ordinary type checking reports concrete mismatches
            return

        if isinstance(sub, Variable) and sub.nullable and not sup.nullable:
            # Null safety is checked once the type is known; only the non-null part constrains
            logger.debug(f"session {self.session.session_id}: nullable {sub} flows into non-null {sup} ({provenance})")

        # Base case: both sides are variables
        if isinstance(sub, Variable) and isinstance(sup, Variable):
            if sub.key != sup.key:
                self._emit(ConstraintKind.SUBTYPE, sub.non_null(), sup.non_null(), provenance)
            return

        if isinstance(sub, Variable):
            self._emit(ConstraintKind.SUBTYPE, sub.non_null(), sup, provenance)
            return

        if isinstance(sup, Variable):
            # X <: v? only says something about the non-null part of X
            source = sub.non_null() if sup.nullable else sub
            if source.name == NOTHING.name:
                return
            self._emit(ConstraintKind.SUBTYPE, source, sup.non_null(), provenance)
            return

        # Both constructed: view ``sub`` as ``sup``'s constructor and decompose
        viewed = self.lattice.upcast(sub, sup.name)
        if viewed is None or len(viewed.type_arguments) != len(sup.type_arguments):
            logger.debug(f"session {self.session.session_id}: {sub} is not a {sup.name}, no evidence")
            return
        variances = self.lattice.hierarchy.variances(sup.name) or (Variance.INVARIANT,) * len(sup.type_arguments)
        for variance, sub_arg, sup_arg in zip(variances, viewed.type_arguments, sup.type_arguments):
            if variance == Variance.COVARIANT:
                self._subtype(sub_arg, sup_arg, provenance)
            elif variance == Variance.CONTRAVARIANT:
                self._subtype(sup_arg, sub_arg, provenance)
            else:
                self._equal(sub_arg, sup_arg, provenance)

    def _equal(self, left: DeclaredType, right: DeclaredType, provenance: Provenance):
        if isinstance(left, (FunctionType, TypeParameter)) or isinstance(right, (FunctionType, TypeParameter)):
            return
        if not contains_variables(left) and not contains_variables(right):
            return

        if isinstance(left, Variable) and isinstance(right, Variable):
            if left.key != right.key:
                self._emit(ConstraintKind.EQUAL, left.non_null(), right.non_null(), provenance)
            return

        if isinstance(left, Variable) or isinstance(right, Variable):
            variable, other = (left, right) if isinstance(left, Variable) else (right, left)
            if variable.nullable:
                # v? == X pins v between X! and X
                self._emit(ConstraintKind.SUBTYPE, other.non_null(), variable.non_null(), provenance)
                self._emit(ConstraintKind.SUBTYPE, variable.non_null(), other, provenance)
            else:
                self._emit(ConstraintKind.EQUAL, variable, other, provenance)
            return

        viewed = self.lattice.upcast(left, right.name)
        target = right
        if viewed is None:
            viewed = self.lattice.upcast(right, left.name)
            target = left
        if viewed is None or len(viewed.type_arguments) != len(target.type_arguments):
            logger.debug(f"session {self.session.session_id}: {left} and {right} are unrelated, no evidence")
            return
        for left_arg, right_arg in zip(viewed.type_arguments, target.type_arguments):
            self._equal(left_arg, right_arg, provenance)

    def _emit(self, kind: ConstraintKind, left: Type, right: Type, provenance: Provenance):
        self.session.add_constraint(kind, left, right, provenance)

    @staticmethod
    def _provenance(expression: Expression, description: str) -> Provenance:
        return Provenance(description, expression.position)


def _as_nominal(t: DeclaredType) -> DeclaredType:
    """``R.(A) -> B`` as the nominal ``Function2<R, A, B>``; other types unchanged."""
    if not isinstance(t, FunctionType):
        return t
    parameters = tuple(t.parameter_types)
    if t.receiver is not None:
        parameters = (t.receiver,) + parameters
    return function_type(parameters, t.return_type)


def collect_constraints(session: InferenceSession, lattice: TypeLattice,
                        settings: Optional[InferenceSettings] = None) -> InferenceSession:
    """Fill ``session`` with the evidence found in its builder lambdas."""
    return ConstraintCollector(session, lattice, settings).collect()
