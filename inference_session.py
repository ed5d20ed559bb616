"""
Postponed type variables, the constraints on them, and the session owning both.

A session is created per eligible call site by the PostponedVariableAllocator,
filled by the ConstraintCollector, consumed exactly once by the
ConstraintResolver (which freezes it), and finally released by the
SessionFinalizer. Sessions are confined to one thread; the allocator is shared.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from eligibility import Eligible
from errors import AllocationError, FrozenSessionError, SessionOwnershipError
from expression_tree import CallSite
from type_model import (
    DeclaredType, FunctionType, Provenance, Type, TypeParameter, Variable, instantiate, variables_in
)

logger = logging.getLogger(__name__)


class ConstraintKind(Enum):
    SUBTYPE = "subtype"  # left <: right
    EQUAL = "equal"      # left == right


@dataclass(frozen=True)
class Constraint:
    """A single piece of evidence about postponed variables."""

    kind: ConstraintKind
    left: Type
    right: Type
    provenance: Provenance

    def variables(self) -> List[Variable]:
        seen = {v.key: v for v in variables_in(self.left)}
        for v in variables_in(self.right):
            seen.setdefault(v.key, v)
        return list(seen.values())

    def __str__(self):
        operator = "<:" if self.kind == ConstraintKind.SUBTYPE else "=="
        return f"{self.left} {operator} {self.right} ({self.provenance})"


@dataclass(frozen=True)
class VariableUsage:
    """A non-universal use of a variable-typed value, kept for diagnostics."""

    variable: Variable
    provenance: Provenance


class InferenceSession:
    """All state of one builder inference attempt.

    Attributes:
        session_id: Unique id, also stamped into each owned Variable
        call_site: The call being inferred
        variables: Postponed variables, in callee type parameter order
        fixed_bindings: Callee type parameters bound by ordinary unification
        constraints: Emitted constraints in emission order
    """

    def __init__(self, session_id: int, call_site: CallSite, eligible: Eligible,
                 variables: Dict[Tuple[str, str], Variable]):
        self.session_id = session_id
        self.call_site = call_site
        self.eligible = eligible
        self._by_parameter = dict(variables)
        self.variables: List[Variable] = list(variables.values())
        self.fixed_bindings = dict(eligible.fixed_bindings)
        self.constraints: List[Constraint] = []
        self.usages: List[VariableUsage] = []
        self.frozen = False
        self.released = False
        self.outcome = None

    # -- views of the callee, instantiated with this session's variables --

    @property
    def instantiation(self) -> Dict[Tuple[str, str], Type]:
        mapping: Dict[Tuple[str, str], Type] = dict(self.fixed_bindings)
        mapping.update(self._by_parameter)
        return mapping

    def instantiate(self, t: DeclaredType) -> DeclaredType:
        return instantiate(t, self.instantiation)

    def builder_function_type(self, index: int) -> FunctionType:
        """The lambda type of builder argument ``index`` over the session's variables."""
        declared = self.call_site.builder_parameter(index)
        if declared is None:
            raise ValueError(f"Argument {index} of {self.call_site.describe()} is not a builder lambda")
        return self.instantiate(declared)

    @property
    def builder_arguments(self) -> Tuple[int, ...]:
        return self.eligible.builder_arguments

    def variable_for(self, parameter: TypeParameter) -> Optional[Variable]:
        return self._by_parameter.get(parameter.key)

    def owns(self, variable: Variable) -> bool:
        return variable.session_id == self.session_id and any(v.id == variable.id for v in self.variables)

    # -- constraints --

    def add_constraint(self, kind: ConstraintKind, left: Type, right: Type,
                       provenance: Provenance) -> Optional[Constraint]:
        """Record a constraint; returns None when it is trivially true and dropped."""
        if self.frozen:
            raise FrozenSessionError(f"Session {self.session_id} is resolved and no longer accepts constraints")
        for t in (left, right):
            for variable in variables_in(t):
                if not self.owns(variable):
                    raise SessionOwnershipError(
                        f"Variable {variable} belongs to session {variable.session_id}, "
                        f"not session {self.session_id}"
                    )
        if not isinstance(left, Variable) and not isinstance(right, Variable):
            raise ValueError(f"Constraint {left} / {right} has no variable side")
        if left == right:
            return None

        constraint = Constraint(
            kind, left, right,
            Provenance(provenance.description, provenance.position, len(self.constraints)),
        )
        self.constraints.append(constraint)
        logger.debug(f"session {self.session_id}: {constraint}")
        return constraint

    def constraints_for(self, variable: Variable) -> Iterator[Constraint]:
        """Constraints having ``variable`` itself (not nested) on one side."""
        key = variable.key
        for constraint in self.constraints:
            if any(isinstance(side, Variable) and side.key == key
                   for side in (constraint.left, constraint.right)):
                yield constraint

    def record_usage(self, variable: Variable, provenance: Provenance):
        if self.frozen:
            raise FrozenSessionError(f"Session {self.session_id} is resolved and no longer records usages")
        self.usages.append(VariableUsage(variable.non_null(), provenance))

    def is_constrained(self, variable: Variable) -> bool:
        return any(v.key == variable.key for c in self.constraints for v in c.variables())

    def freeze(self):
        self.frozen = True

    def __repr__(self):
        names = ", ".join(str(v) for v in self.variables)
        return f"InferenceSession({self.session_id}, {self.call_site.describe()}, [{names}])"


class PostponedVariableAllocator:
    """Hands out fresh variables and tracks which live session owns each id.

    Thread-safe: one allocator may serve sessions running on different threads.
    """

    def __init__(self, id_source: Optional[Iterator[int]] = None):
        self._ids = id_source if id_source is not None else itertools.count(1)
        self._session_ids = itertools.count(1)
        self._owners: Dict[int, int] = {}
        self._lock = threading.Lock()

    def allocate(self, call_site: CallSite, eligible: Eligible) -> InferenceSession:
        with self._lock:
            session_id = next(self._session_ids)
            claimed: List[int] = []
            variables: Dict[Tuple[str, str], Variable] = {}
            for parameter in eligible.postponed:
                variable_id = next(self._ids)
                if variable_id in self._owners:
                    owner = self._owners[variable_id]
                    for released in claimed:
                        del self._owners[released]
                    raise AllocationError(
                        f"Variable id {variable_id} is already owned by live session {owner}"
                    )
                self._owners[variable_id] = session_id
                claimed.append(variable_id)
                variables[parameter.key] = Variable(
                    variable_id, parameter.name, session_id, parameter.upper_bound
                )

        session = InferenceSession(session_id, call_site, eligible, variables)
        logger.debug(f"Allocated {session!r}")
        return session

    def release(self, session: InferenceSession):
        """Retire the session's variable ids; releasing twice is harmless."""
        with self._lock:
            for variable in session.variables:
                if self._owners.get(variable.id) == session.session_id:
                    del self._owners[variable.id]
        session.released = True

    def owner_of(self, variable_id: int) -> Optional[int]:
        with self._lock:
            return self._owners.get(variable_id)

    @property
    def live_variable_count(self) -> int:
        with self._lock:
            return len(self._owners)
