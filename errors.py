"""
Exceptions raised by builder type inference.

Inference *outcomes* (not eligible, ambiguous, incompatible, unresolved) are
reported as values; the exceptions below signal configuration or programming
errors, plus the failures surfaced by the raising convenience entry point.
"""


class BuilderInferenceError(Exception):
    """Base class for all builder inference errors."""


class HierarchyError(BuilderInferenceError):
    """Raised when a type hierarchy declaration is malformed."""


class HierarchyCycleError(HierarchyError):
    """Raised at load time when the supertype graph contains a cycle."""

    def __init__(self, cycle):
        self.cycle = list(cycle)
        super().__init__("Cyclic type hierarchy: " + " -> ".join(self.cycle))


class SessionError(BuilderInferenceError):
    """Raised when an inference session invariant is violated."""


class AllocationError(SessionError):
    """Raised when a variable id would be owned by two live sessions."""


class SessionOwnershipError(SessionError):
    """Raised when a constraint mentions a variable of another session."""


class FrozenSessionError(SessionError):
    """Raised when a resolved (frozen) session is mutated."""


class MalformedTreeError(BuilderInferenceError):
    """Raised when a lambda body is not a finite tree (a node is reachable twice)."""


class NotEligibleError(BuilderInferenceError):
    """Raised by the convenience entry point when builder inference does not apply."""
