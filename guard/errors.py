"""Error taxonomy for the command execution guard.

Every error carries an ``error_category`` (written to the structured log so
failure classes can be told apart without relying on exit codes) and the
exit code the error trap maps it to.

Pre-execution errors (validation, path, guard) are always fatal to the
current operation. ExecutionFailure and CommandTimeout are only raised when a
caller asks for it via ExecutionResult.check().
"""


class GuardBaseError(Exception):
    """Base class for all guard errors."""

    error_category = "internal"
    exit_code = 1

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_fields(self) -> dict:
        """Key/value pairs merged into the log event for this error."""
        return {"error_category": self.error_category}


class ValidationError(GuardBaseError):
    """A parameter failed validation."""

    error_category = "validation"
    exit_code = 2

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason

    def to_fields(self) -> dict:
        return {"error_category": self.error_category, "field": self.field, "reason": self.reason}


class PathError(GuardBaseError):
    """A path failed traversal, containment or access checks."""

    error_category = "path"
    exit_code = 2

    def __init__(self, path: str, reason: str):
        super().__init__(f"{reason}: {path}")
        self.path = path
        self.reason = reason

    def to_fields(self) -> dict:
        return {"error_category": self.error_category, "path": self.path, "reason": self.reason}


class GuardError(GuardBaseError):
    """A command was refused before any process was spawned.

    ``reason`` is one of NOT_ALLOWED, DANGEROUS_PATTERN, METACHARACTER_DETECTED.
    """

    NOT_ALLOWED = "not-allowed"
    DANGEROUS_PATTERN = "dangerous-pattern"
    METACHARACTER_DETECTED = "metacharacter-detected"

    error_category = "guard"
    exit_code = 3

    def __init__(self, reason: str, command: str, detail: str = ""):
        msg = f"Blocked ({reason}): {command}"
        if detail:
            msg += f" - {detail}"
        super().__init__(msg)
        self.reason = reason
        self.command = command
        self.detail = detail

    def to_fields(self) -> dict:
        return {
            "error_category": self.error_category,
            "reason": self.reason,
            "command": self.command,
            "detail": self.detail,
        }


class ExecutionFailure(GuardBaseError):
    """A command ran but exited non-zero."""

    error_category = "execution"

    def __init__(self, result):
        super().__init__(f"Command failed ({result.exit_code}): {' '.join(result.argv)}")
        self.result = result
        self.exit_code = result.exit_code if result.exit_code > 0 else 1

    def to_fields(self) -> dict:
        return {"error_category": self.error_category, "exit_code": self.result.exit_code}


class CommandTimeout(GuardBaseError):
    """A command exceeded its deadline and was killed."""

    error_category = "timeout"
    exit_code = 124

    def __init__(self, result):
        super().__init__(f"Command timed out: {' '.join(result.argv)}")
        self.result = result


class ConfigError(GuardBaseError):
    """Configuration file or environment value is invalid."""

    error_category = "config"
    exit_code = 2


class InternalError(GuardBaseError):
    """Failure inside the guard itself (logger, serialization)."""


class OperationFailed(GuardBaseError):
    """A wrapped sub-step reported a non-zero status (see ErrorTrap.fail)."""

    error_category = "execution"

    def __init__(self, operation: str, exit_code: int, detail: str = ""):
        msg = f"{operation} failed with exit code {exit_code}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
        self.operation = operation
        self.exit_code = exit_code if exit_code > 0 else 1
