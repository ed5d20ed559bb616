"""
Resolution of postponed variables from the evidence a session collected.

Per variable:
1. Partition constraints into lower (``X <: v``), upper (``v <: Y``) and equal witnesses
2. Equal witnesses must agree and satisfy every lower/upper witness
3. Otherwise L = join of the lower witnesses, U = meet of the upper witnesses
4. L <: U resolves to L (the most specific type the evidence allows)
5. Upper-only evidence resolves to U; no evidence to the declared upper bound
6. L not below U is ambiguous
7. The result must respect the variable's declared upper bound

Witnesses that mention other variables are closed by a bounded fixpoint.
Lower bounds grow from ``Nothing`` with every variable's current lower
candidate substituted; upper bounds then narrow from the declared bound with
the type each variable settles on substituted. Both passes are monotone, so
they stop once a round changes nothing; a pass that keeps changing leaves its
variables unresolved.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from errors import FrozenSessionError
from inference_session import ConstraintKind, InferenceSession
from settings import InferenceSettings
from type_lattice import TypeLattice
from type_model import NOTHING, Concrete, Provenance, Type, Variable, contains_variables, substitute

logger = logging.getLogger(__name__)


class FailureKind(Enum):
    AMBIGUOUS_CONSTRAINTS = "ambiguous_constraints"
    INCOMPATIBLE_CONSTRAINTS = "incompatible_constraints"
    UNRESOLVED_VARIABLE = "unresolved_variable"


@dataclass(frozen=True)
class Witness:
    type: Type
    provenance: Provenance

    def __str__(self):
        return f"{self.type} ({self.provenance})"


@dataclass(frozen=True)
class EvidenceSnapshot:
    """The partitioned evidence about one variable, kept for diagnostics."""

    variable: Variable
    lower: Tuple[Witness, ...] = ()
    upper: Tuple[Witness, ...] = ()
    equal: Tuple[Witness, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.lower or self.upper or self.equal)

    @property
    def is_open(self) -> bool:
        """Whether some witness still mentions a variable."""
        return any(contains_variables(w.type) for w in self.lower + self.upper + self.equal)

    def substituted(self, bindings: Dict[Tuple[int, int], Concrete],
                    upper_bindings: Optional[Dict[Tuple[int, int], Concrete]] = None) -> "EvidenceSnapshot":
        """Apply ``bindings`` and drop the witnesses that stay open.

        Upper witnesses use ``upper_bindings`` when given. A lower witness that
        closes to ``Nothing`` carries no information and is dropped as well.
        """

        def close(witnesses: Tuple[Witness, ...], mapping, skip_bottom: bool = False) -> Tuple[Witness, ...]:
            closed = []
            for witness in witnesses:
                t = substitute(witness.type, mapping)
                if contains_variables(t) or (skip_bottom and t == NOTHING):
                    continue
                closed.append(Witness(t, witness.provenance))
            return tuple(closed)

        upper_mapping = bindings if upper_bindings is None else upper_bindings
        return replace(
            self,
            lower=close(self.lower, bindings, skip_bottom=True),
            upper=close(self.upper, upper_mapping),
            equal=close(self.equal, bindings),
        )

    def with_open_equalities_split(self) -> "EvidenceSnapshot":
        """Turn each open ``v == T`` into ``T <: v`` plus ``v <: T``."""
        open_equal = tuple(w for w in self.equal if contains_variables(w.type))
        if not open_equal:
            return self
        return replace(
            self,
            lower=self.lower + open_equal,
            upper=self.upper + open_equal,
            equal=tuple(w for w in self.equal if not contains_variables(w.type)),
        )

    def describe(self) -> str:
        lines = [f"{self.variable}:"]
        for label, witnesses in (("lower", self.lower), ("upper", self.upper), ("equal", self.equal)):
            for witness in witnesses:
                lines.append(f"  {label}: {witness}")
        if len(lines) == 1:
            lines.append("  no evidence")
        return "\n".join(lines)


@dataclass(frozen=True)
class Resolved:
    variable: Variable
    type: Concrete


@dataclass(frozen=True)
class Failed:
    variable: Variable
    kind: FailureKind
    evidence: EvidenceSnapshot
    message: str

    @property
    def provenance(self) -> Optional[Provenance]:
        witnesses = self.evidence.lower + self.evidence.upper + self.evidence.equal
        if not witnesses:
            return None
        return min((w.provenance for w in witnesses), key=lambda p: p.order)


ResolutionResult = Union[Resolved, Failed]


@dataclass
class SessionResolution:
    """Outcome of resolving every variable of one session."""

    session: InferenceSession
    results: Dict[Tuple[int, int], ResolutionResult]
    iterations: int = 1

    @property
    def succeeded(self) -> bool:
        return all(isinstance(r, Resolved) for r in self.results.values())

    @property
    def failures(self) -> List[Failed]:
        return [r for r in self.results.values() if isinstance(r, Failed)]

    def bindings(self) -> Dict[Tuple[int, int], Concrete]:
        return {key: r.type for key, r in self.results.items() if isinstance(r, Resolved)}


class ConstraintResolver:
    """Turns a session's constraints into one concrete type per variable."""

    def __init__(self, lattice: TypeLattice, settings: Optional[InferenceSettings] = None):
        self.lattice = lattice
        self.settings = settings or InferenceSettings()

    def resolve(self, session: InferenceSession) -> SessionResolution:
        """Resolve and freeze ``session``; a session is resolved at most once."""
        if session.frozen:
            raise FrozenSessionError(f"Session {session.session_id} has already been resolved")

        evidence = {v.key: self.partition(session, v) for v in session.variables}
        if any(snapshot.is_open for snapshot in evidence.values()):
            results, iterations = self._resolve_to_fixpoint(session, evidence)
        else:
            results = {key: self.resolve_variable(snapshot) for key, snapshot in evidence.items()}
            iterations = 1

        session.freeze()
        resolution = SessionResolution(session, results, iterations)
        logger.debug(
            f"session {session.session_id}: resolved in {iterations} round(s), "
            f"{len(resolution.failures)} failure(s); lattice cache "
            f"{self.lattice.cache.hits} hits / {self.lattice.cache.misses} misses"
        )
        return resolution

    @staticmethod
    def partition(session: InferenceSession, variable: Variable) -> EvidenceSnapshot:
        """Sort the constraints mentioning ``variable`` into lower, upper and equal witnesses."""
        lower: List[Witness] = []
        upper: List[Witness] = []
        equal: List[Witness] = []
        key = variable.key

        def is_variable(t: Type) -> bool:
            return isinstance(t, Variable) and t.key == key

        for constraint in session.constraints_for(variable):
            if constraint.kind == ConstraintKind.SUBTYPE:
                if is_variable(constraint.right) and not is_variable(constraint.left):
                    lower.append(Witness(constraint.left, constraint.provenance))
                elif is_variable(constraint.left) and not is_variable(constraint.right):
                    upper.append(Witness(constraint.right, constraint.provenance))
            else:
                other = constraint.right if is_variable(constraint.left) else constraint.left
                if not is_variable(other):
                    equal.append(Witness(other, constraint.provenance))
        return EvidenceSnapshot(variable, tuple(lower), tuple(upper), tuple(equal))

    def resolve_variable(self, evidence: EvidenceSnapshot) -> ResolutionResult:
        """Resolve one variable from closed (variable-free) evidence."""
        variable = evidence.variable

        if evidence.equal:
            candidates = {w.type for w in evidence.equal}
            if len(candidates) > 1:
                listed = ", ".join(str(w) for w in evidence.equal)
                return self._failed(evidence, FailureKind.AMBIGUOUS_CONSTRAINTS,
                                    f"{variable} is required to equal different types: {listed}")
            candidate = evidence.equal[0].type
            for witness in evidence.lower:
                if not self.lattice.is_subtype(witness.type, candidate):
                    return self._failed(evidence, FailureKind.INCOMPATIBLE_CONSTRAINTS,
                                        f"{variable} = {candidate} does not accept {witness}")
            for witness in evidence.upper:
                if not self.lattice.is_subtype(candidate, witness.type):
                    return self._failed(evidence, FailureKind.INCOMPATIBLE_CONSTRAINTS,
                                        f"{variable} = {candidate} is not a subtype of {witness}")
            return self._check_bound(evidence, candidate)

        if not evidence.lower and not evidence.upper:
            return Resolved(variable, variable.upper_bound)

        upper = self.lattice.meet_all(w.type for w in evidence.upper)
        if upper is None:
            listed = ", ".join(str(w) for w in evidence.upper)
            return self._failed(evidence, FailureKind.INCOMPATIBLE_CONSTRAINTS,
                                f"{variable} has no common subtype of its upper bounds: {listed}")

        if not evidence.lower:
            return self._check_bound(evidence, upper)

        lower = self.lattice.join_all(w.type for w in evidence.lower)
        if not self.lattice.is_subtype(lower, upper):
            return self._failed(
                evidence, FailureKind.AMBIGUOUS_CONSTRAINTS,
                f"{variable} needs a supertype of {lower} and a subtype of {upper}; "
                f"lower: {', '.join(str(w) for w in evidence.lower)}; "
                f"upper: {', '.join(str(w) for w in evidence.upper)}",
            )
        return self._check_bound(evidence, lower)

    def _check_bound(self, evidence: EvidenceSnapshot, candidate: Concrete) -> ResolutionResult:
        variable = evidence.variable
        if not self.lattice.is_subtype(candidate, variable.upper_bound):
            return self._failed(evidence, FailureKind.INCOMPATIBLE_CONSTRAINTS,
                                f"{variable} = {candidate} violates the declared bound {variable.upper_bound}")
        return Resolved(variable, candidate)

    @staticmethod
    def _failed(evidence: EvidenceSnapshot, kind: FailureKind, message: str) -> Failed:
        return Failed(evidence.variable, kind, evidence, message)

    def _resolve_to_fixpoint(
        self,
        session: InferenceSession,
        evidence: Dict[Tuple[int, int], EvidenceSnapshot],
    ) -> Tuple[Dict[Tuple[int, int], ResolutionResult], int]:
        split = {key: snapshot.with_open_equalities_split() for key, snapshot in evidence.items()}
        limit = self.settings.max_fixpoint_iterations

        lower: Dict[Tuple[int, int], Concrete] = {key: NOTHING for key in split}
        unstable = set(split)
        lower_rounds = 0
        for lower_rounds in range(1, limit + 1):
            grown = {key: self._lower_candidate(snapshot, lower) for key, snapshot in split.items()}
            unstable = {key for key in split if grown[key] != lower[key]}
            lower = grown
            logger.debug(f"session {session.session_id}: lower round {lower_rounds}, {len(unstable)} changed")
            if not unstable:
                break

        upper = {key: snapshot.variable.upper_bound for key, snapshot in split.items()}
        settled = self._settled(lower, upper)
        narrowing = set(split)
        upper_rounds = 0
        for upper_rounds in range(1, limit + 1):
            narrowed = {key: self._upper_candidate(snapshot, settled, upper[key]) for key, snapshot in split.items()}
            narrowing = {key for key in split if narrowed[key] != upper[key]}
            upper = narrowed
            settled = self._settled(lower, upper)
            logger.debug(f"session {session.session_id}: upper round {upper_rounds}, {len(narrowing)} changed")
            if not narrowing:
                break

        results: Dict[Tuple[int, int], ResolutionResult] = {}
        for key, snapshot in split.items():
            if key in unstable or key in narrowing:
                results[key] = self._failed(
                    evidence[key], FailureKind.UNRESOLVED_VARIABLE,
                    f"{snapshot.variable} did not stabilise within {limit} round(s)",
                )
                continue
            result = self.resolve_variable(snapshot.substituted(lower, settled))
            if isinstance(result, Failed):
                # Report against the full evidence, open witnesses included
                result = replace(result, evidence=evidence[key])
            results[key] = result
        return results, lower_rounds + upper_rounds

    def _lower_candidate(self, evidence: EvidenceSnapshot,
                         lower: Dict[Tuple[int, int], Concrete]) -> Concrete:
        closed = evidence.substituted(lower)
        if closed.equal:
            return closed.equal[0].type
        return self.lattice.join_all(w.type for w in closed.lower)

    def _upper_candidate(self, evidence: EvidenceSnapshot, settled: Dict[Tuple[int, int], Concrete],
                         previous: Concrete) -> Concrete:
        closed = evidence.substituted(settled)
        met = self.lattice.meet_all([evidence.variable.upper_bound] + [w.type for w in closed.upper])
        # No common subtype: keep the last bound, the final resolution reports it
        return previous if met is None else met

    @staticmethod
    def _settled(lower: Dict[Tuple[int, int], Concrete],
                 upper: Dict[Tuple[int, int], Concrete]) -> Dict[Tuple[int, int], Concrete]:
        """The type each variable resolves to: its lower candidate if it has one, else its upper."""
        return {key: upper[key] if lower[key] == NOTHING else lower[key] for key in lower}


def resolve_session(session: InferenceSession, lattice: TypeLattice,
                    settings: Optional[InferenceSettings] = None) -> SessionResolution:
    return ConstraintResolver(lattice, settings).resolve(session)
