"""Diagnostics reported while finalizing builder inference sessions."""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from type_model import Provenance

logger = logging.getLogger(__name__)


class DiagnosticSeverity(Enum):
    """Severity levels for inference diagnostics."""

    INFO = "info"
    WARNING = "warning"  # inference still succeeded
    ERROR = "error"  # the call site could not be typed


@dataclass(frozen=True)
class Diagnostic:
    """A single diagnostic with the evidence location it points at."""

    severity: DiagnosticSeverity
    code: str
    message: str
    call_site: str = ""
    provenance: Optional[Provenance] = None

    def format(self) -> str:
        # SEVERITY [code]: call site: message (at provenance)
        location = f" ({self.provenance})" if self.provenance is not None else ""
        prefix = f"{self.call_site}: " if self.call_site else ""
        return f"{self.severity.value.upper()} [{self.code}]: {prefix}{self.message}{location}"


class DiagnosticsSink:
    """Receives diagnostics from the finalizer. Implementations must be thread-safe."""

    def report(self, diagnostic: Diagnostic) -> None:
        raise NotImplementedError

    def error(self, code: str, message: str, call_site: str = "",
              provenance: Optional[Provenance] = None) -> None:
        self.report(Diagnostic(DiagnosticSeverity.ERROR, code, message, call_site, provenance))

    def warning(self, code: str, message: str, call_site: str = "",
                provenance: Optional[Provenance] = None) -> None:
        self.report(Diagnostic(DiagnosticSeverity.WARNING, code, message, call_site, provenance))


class CollectingDiagnosticsSink(DiagnosticsSink):
    """Keeps every diagnostic in memory.

    Usage:
        sink = CollectingDiagnosticsSink()
        engine = BuilderInferenceEngine(lattice, sink=sink)
        engine.try_infer(call_site)
        if sink.has_errors():
            print(sink.format_for_user())
    """

    def __init__(self):
        self.diagnostics: List[Diagnostic] = []
        self._lock = threading.Lock()

    def report(self, diagnostic: Diagnostic) -> None:
        with self._lock:
            self.diagnostics.append(diagnostic)

    def has_errors(self) -> bool:
        return self.error_count() > 0

    def error_count(self) -> int:
        return sum(1 for d in self.diagnostics if d.severity == DiagnosticSeverity.ERROR)

    def warning_count(self) -> int:
        return sum(1 for d in self.diagnostics if d.severity == DiagnosticSeverity.WARNING)

    def with_code(self, code: str) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.code == code]

    def format_for_user(self) -> str:
        if not self.diagnostics:
            return "No diagnostics."
        lines = [d.format() for d in self.diagnostics]
        lines.append(f"\nInference summary: {self.error_count()} error(s), {self.warning_count()} warning(s)")
        return "\n".join(lines)


class LoggingDiagnosticsSink(DiagnosticsSink):
    """Forwards diagnostics to a logger."""

    _LEVELS = {
        DiagnosticSeverity.INFO: logging.INFO,
        DiagnosticSeverity.WARNING: logging.WARNING,
        DiagnosticSeverity.ERROR: logging.ERROR,
    }

    def __init__(self, target: Optional[logging.Logger] = None):
        self.logger = target or logger

    def report(self, diagnostic: Diagnostic) -> None:
        self.logger.log(self._LEVELS[diagnostic.severity], diagnostic.format())
