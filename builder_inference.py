"""
Builder type inference: infer the type arguments of a generic call from the
bodies of the lambdas passed to it.

    fun <K, V> buildMap(builder: MutableMap<K, V>.() -> Unit): Map<K, V>

    buildMap { put("key", 2) }      # K = String, V = Int

Pipeline per call site:
1. EligibilityAnalyzer: does ordinary unification leave receiver parameters free?
2. PostponedVariableAllocator: one fresh Variable per postponed parameter
3. ConstraintCollector: walk the builder lambdas, record subtype/equality evidence
4. ConstraintResolver: join/meet the evidence into one type per variable
5. SessionFinalizer: substitute, write the result, report diagnostics

Outcomes are values (NotEligible, Success, Failure); exceptions are reserved
for malformed input and for the raising convenience entry point.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

from constraint_collector import ConstraintCollector
from constraint_resolver import (
    ConstraintResolver, EvidenceSnapshot, Failed, FailureKind, SessionResolution
)
from diagnostics import DiagnosticsSink, LoggingDiagnosticsSink
from eligibility import EligibilityAnalyzer, NotEligible
from errors import BuilderInferenceError, NotEligibleError
from expression_tree import CallSite
from inference_session import InferenceSession, PostponedVariableAllocator
from settings import InferenceSettings
from type_lattice import LatticeCache, TypeHierarchy, TypeLattice
from type_model import Concrete, DeclaredType, FunctionType, substitute

logger = logging.getLogger(__name__)

UNCONSTRAINED_VARIABLE = "unconstrained_variable"


@dataclass(frozen=True)
class Success:
    """Every postponed variable resolved.

    Attributes:
        type_arguments: All callee type arguments by parameter name, in declaration order
        return_type: The callee's return type with the type arguments applied
        receiver_types: Receiver type of each builder lambda, by argument index
    """

    type_arguments: Dict[str, Concrete]
    return_type: DeclaredType
    receiver_types: Dict[int, DeclaredType] = field(default_factory=dict)


@dataclass(frozen=True)
class Failure:
    """At least one variable failed; nothing was written for the call site."""

    kind: FailureKind
    evidence: Tuple[EvidenceSnapshot, ...]
    message: str


InferenceOutcome = Union[NotEligible, Success, Failure]


class TypeCheckingResult:
    """The external result store the finalizer writes inferred call site types into."""

    def __init__(self):
        self._entries: Dict[int, Tuple[CallSite, Success]] = {}
        self._lock = threading.Lock()

    def record(self, call_site: CallSite, success: Success):
        with self._lock:
            self._entries[id(call_site)] = (call_site, success)

    def get(self, call_site: CallSite) -> Optional[Success]:
        with self._lock:
            entry = self._entries.get(id(call_site))
        return entry[1] if entry is not None else None

    def __contains__(self, call_site: CallSite) -> bool:
        return self.get(call_site) is not None

    def __len__(self):
        with self._lock:
            return len(self._entries)


class SessionFinalizer:
    """Applies a resolution to the outside world, atomically and at most once."""

    def __init__(self, sink: DiagnosticsSink, results: TypeCheckingResult,
                 allocator: PostponedVariableAllocator, settings: Optional[InferenceSettings] = None):
        self.sink = sink
        self.results = results
        self.allocator = allocator
        self.settings = settings or InferenceSettings()

    def finalize(self, session: InferenceSession, resolution: SessionResolution) -> Union[Success, Failure]:
        if session.outcome is not None:
            # Already finalized: substituting again would change nothing
            return session.outcome

        try:
            if resolution.succeeded:
                outcome = self._succeed(session, resolution)
            else:
                outcome = self._fail(session, resolution)
            session.outcome = outcome
        finally:
            self.allocator.release(session)
        return outcome

    def _succeed(self, session: InferenceSession, resolution: SessionResolution) -> Success:
        bindings = resolution.bindings()
        call_site = session.call_site
        mapping = {key: substitute(t, bindings) for key, t in session.instantiation.items()}

        type_arguments: Dict[str, Concrete] = {}
        for parameter in call_site.callee.type_parameters:
            if parameter.key in mapping:
                type_arguments[parameter.name] = mapping[parameter.key]
            else:
                type_arguments[parameter.name] = parameter.upper_bound

        receiver_types = {}
        for index in session.builder_arguments:
            function = substitute(session.builder_function_type(index), bindings)
            if isinstance(function, FunctionType):
                receiver_types[index] = function.receiver
        return_type = substitute(session.instantiate(call_site.callee.return_type), bindings)

        if self.settings.warn_on_unconstrained_usage:
            self._warn_unconstrained(session, bindings)

        success = Success(type_arguments, return_type, receiver_types)
        self.results.record(call_site, success)
        logger.info(
            f"{call_site.describe()}: inferred "
            + ", ".join(f"{name} = {t}" for name, t in type_arguments.items())
        )
        return success

    def _fail(self, session: InferenceSession, resolution: SessionResolution) -> Failure:
        call_site = session.call_site
        failures: List[Failed] = sorted(
            resolution.failures,
            key=lambda f: (f.provenance.order if f.provenance is not None else -1, f.variable.id),
        )
        for failed in failures:
            self.sink.error(failed.kind.value, failed.message, call_site.describe(), failed.provenance)

        first = failures[0]
        logger.info(f"{call_site.describe()}: builder inference failed ({first.kind.value})")
        return Failure(
            first.kind,
            tuple(f.evidence for f in failures),
            "; ".join(f.message for f in failures),
        )

    def _warn_unconstrained(self, session: InferenceSession, bindings):
        """One warning per use of a variable that no constraint mentions."""
        for usage in session.usages:
            variable = usage.variable
            if session.is_constrained(variable):
                continue
            message = (
                f"{variable} is used but never constrained; "
                f"falling back to its declared upper bound {bindings.get(variable.key, variable.upper_bound)}"
            )
            logger.warning(f"{session.call_site.describe()}: {message}")
            self.sink.warning(UNCONSTRAINED_VARIABLE, message, session.call_site.describe(), usage.provenance)


class BuilderInferenceEngine:
    """Runs builder inference sessions against one type lattice.

    Usage:
        lattice = TypeLattice(TypeHierarchy.from_yaml("hierarchy.yaml"))
        engine = BuilderInferenceEngine(lattice)
        outcome = engine.try_infer(call_site)
    """

    def __init__(
        self,
        lattice: TypeLattice,
        settings: Optional[InferenceSettings] = None,
        sink: Optional[DiagnosticsSink] = None,
        allocator: Optional[PostponedVariableAllocator] = None,
        results: Optional[TypeCheckingResult] = None,
    ):
        self.lattice = lattice
        self.settings = settings or InferenceSettings()
        self.sink = sink if sink is not None else LoggingDiagnosticsSink()
        self.allocator = allocator if allocator is not None else PostponedVariableAllocator()
        self.results = results if results is not None else TypeCheckingResult()
        self.analyzer = EligibilityAnalyzer(lattice)

    def try_infer(self, call_site: CallSite) -> InferenceOutcome:
        eligibility = self.analyzer.analyze(call_site)
        if isinstance(eligibility, NotEligible):
            return eligibility

        # A private memo table keeps concurrent sessions fully independent
        lattice = self.lattice if self.settings.share_lattice_cache else self.lattice.with_cache(LatticeCache())
        session = self.allocator.allocate(call_site, eligibility)
        try:
            ConstraintCollector(session, lattice, self.settings).collect()
            resolution = ConstraintResolver(lattice, self.settings).resolve(session)
        except Exception:
            self.allocator.release(session)
            raise

        finalizer = SessionFinalizer(self.sink, self.results, self.allocator, self.settings)
        return finalizer.finalize(session, resolution)

    def infer_many(self, call_sites: Iterable[CallSite]) -> List[InferenceOutcome]:
        """Infer independent call sites in parallel; outcomes keep the input order."""
        call_sites = list(call_sites)
        if not call_sites:
            return []
        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as pool:
            return list(pool.map(self.try_infer, call_sites))


def infer_builder_type_arguments(
    call_site: CallSite,
    hierarchy: Union[TypeHierarchy, TypeLattice],
    settings: Optional[InferenceSettings] = None,
    sink: Optional[DiagnosticsSink] = None,
) -> Dict[str, Concrete]:
    """
    Infer the type arguments of ``call_site`` from its builder lambdas.

    Returns the callee's type arguments by parameter name. Raises
    NotEligibleError when builder inference does not apply and
    BuilderInferenceError when the collected evidence cannot be resolved.
    """
    lattice = hierarchy if isinstance(hierarchy, TypeLattice) else TypeLattice(hierarchy)
    outcome = BuilderInferenceEngine(lattice, settings, sink).try_infer(call_site)

    if isinstance(outcome, NotEligible):
        raise NotEligibleError(f"Builder inference does not apply to {call_site.describe()}: {outcome.reason}")
    if isinstance(outcome, Failure):
        raise BuilderInferenceError(f"Could not infer type arguments of {call_site.describe()}: {outcome.message}")
    return outcome.type_arguments
