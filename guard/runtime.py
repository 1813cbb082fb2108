"""Wire the guard components from one GuardConfig.

There is no module-level singleton: each entry point builds its own Guard
and passes it down.
"""

from dataclasses import dataclass

from guard.command_guard import CommandGuard
from guard.config import GuardConfig
from guard.error_trap import ErrorTrap
from guard.path_guard import PathGuard
from guard.structured_log import StructuredLogger, TraceContext
from guard.validation import Validator


@dataclass
class Guard:
    config: GuardConfig
    log: StructuredLogger
    validator: Validator
    paths: PathGuard
    commands: CommandGuard
    trap: ErrorTrap

    def close(self) -> None:
        self.log.close()


def build_guard(config: GuardConfig = None, stream=None, script: str = None,
                trace: TraceContext = None, operation: str = "main") -> Guard:
    """Build a fully wired Guard.

    Args:
        config: Frozen configuration. Defaults to built-in DEFAULTS.
        stream: Diagnostic stream for the logger (stderr when None).
        script: Script identity for log lines.
        trace: Correlation ids. Inherited from TRACE_ID/SPAN_ID when None.
        operation: Name recorded in ErrorContext when the trap fires.
    """
    config = config or GuardConfig.from_dict({})
    log = StructuredLogger.from_config(config, trace=trace, stream=stream, script=script)
    trap = ErrorTrap(log, operation=operation)
    return Guard(
        config=config,
        log=log,
        validator=Validator.from_config(config, log),
        paths=PathGuard.from_config(config, log),
        commands=CommandGuard.from_config(config, log, trap=trap),
        trap=trap,
    )
