from typing import List, Optional
from pydantic import BaseModel

class DevrigDiagnostic(BaseModel):
    """
    Standardized error reporting object for compilation and transform issues.
    """
    file_path: str
    error_code: str
    message: str
    severity: str = "error" # 'error', 'warning', 'critical'
    suggestion: Optional[str] = None
    line_number: Optional[int] = None

    def __str__(self) -> str:
        loc = f"{self.file_path}"
        if self.line_number:
            loc += f":{self.line_number}"
        return f"[{self.error_code}] {self.message} (at {loc})"


class DevrigError(Exception):
    """Base class for orchestrator errors."""


class CompileError(DevrigError):
    """
    One or more source/transform errors for a build target.
    Non-fatal: the previous good output keeps serving.
    """
    def __init__(self, target: str, diagnostics: List[DevrigDiagnostic]):
        self.target = target
        self.diagnostics = list(diagnostics)
        super().__init__(f"Failed to compile '{target}' ({len(self.diagnostics)} error(s))")


class HotReplacementDisabled(DevrigError):
    """The live server instance has no hot replacement capability."""

    def __init__(self, message: str = "Hot Module Replacement is disabled"):
        super().__init__(message)


class ApplyAbortedError(DevrigError):
    """The update cannot be applied in place; a full reload is required."""

    def __init__(self, message: str, modules: Optional[List[str]] = None):
        self.modules = list(modules or [])
        super().__init__(message)


class UnexpectedApplyError(DevrigError):
    """Applying an update raised something other than an abort/fail outcome."""


class AssetCleanError(DevrigError):
    """The build output directory could not be cleaned."""


class ServiceUnavailable(DevrigError):
    """A deferred request was cancelled because the dev server is shutting down."""
