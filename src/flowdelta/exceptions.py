"""Custom exceptions for flowdelta."""


class FlowDeltaError(Exception):
    """Base exception for all flowdelta errors."""


class ConfigError(FlowDeltaError):
    """Configuration-related errors."""


class RegistryError(FlowDeltaError):
    """The workflow registry could not be loaded."""


class PatternError(RegistryError):
    """A workflow declares a file pattern with unsupported syntax."""

    def __init__(self, pattern: str, reason: str, workflow_id: str = ""):
        self.pattern = pattern
        self.reason = reason
        self.workflow_id = workflow_id
        where = f" in workflow '{workflow_id}'" if workflow_id else ""
        super().__init__(f"Invalid pattern {pattern!r}{where}: {reason}")


class ParseError(FlowDeltaError):
    """Diagram text could not be parsed."""

    def __init__(self, line: int, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"line {line}: {reason}")


class DiffError(FlowDeltaError):
    """Two diagrams cannot be compared (e.g. different dialects)."""


class ValidationError(FlowDeltaError):
    """A rendered diagram failed the syntax check after bounded repairs."""

    def __init__(self, message: str, attempts: int = 0):
        self.message = message
        self.attempts = attempts
        super().__init__(message)


class CheckerUnavailableError(ValidationError):
    """The external syntax checker could not be started."""


class DocumentError(FlowDeltaError):
    """A design document does not contain the requested diagram block."""


class DocumentIOError(DocumentError, OSError):
    """Reading or writing a design document failed."""


class AnalysisCancelled(FlowDeltaError):
    """The analysis run was cancelled between units of work."""
