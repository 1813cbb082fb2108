"""Error capture around an entry point.

    trap = ErrorTrap(log, operation="deploy")
    trap.register_cleanup(os.remove, tmp_path)
    with trap:
        ...

Any exception leaving the block is handled exactly once: one ERROR event
("script_error") with an ErrorContext, tracked child processes terminated,
cleanup callbacks run newest-first, then SystemExit with the mapped code.
SIGTERM is turned into an exception so it takes the same path.
"""

import os
import signal
import subprocess
import traceback
from contextlib import contextmanager
from dataclasses import dataclass

from guard.errors import GuardBaseError, OperationFailed
from guard.structured_log import StructuredLogger, utc_timestamp


INTERRUPT_EXIT_CODE = 130
SIGTERM_EXIT_CODE = 143
TERMINATE_GRACE_SECONDS = 5


class Terminated(BaseException):
    """Raised from the SIGTERM handler."""

    def __init__(self, signum: int = signal.SIGTERM):
        super().__init__(f"terminated by signal {signum}")
        self.signum = signum


def signal_process_group(proc: subprocess.Popen, sig: int) -> None:
    """Send sig to every process in proc's group.

    Children spawned with start_new_session=True lead their own group, so
    this reaches anything they started in the background. A process that
    shares our group only gets the signal itself.
    """
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        if proc.poll() is None:
            proc.send_signal(sig)


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, GuardBaseError):
        return exc.exit_code
    if isinstance(exc, KeyboardInterrupt):
        return INTERRUPT_EXIT_CODE
    if isinstance(exc, Terminated):
        return SIGTERM_EXIT_CODE
    return 1


def category_for(exc: BaseException) -> str:
    if isinstance(exc, GuardBaseError):
        return exc.error_category
    if isinstance(exc, KeyboardInterrupt):
        return "interrupted"
    if isinstance(exc, Terminated):
        return "terminated"
    return "internal"


@dataclass(frozen=True)
class ErrorContext:
    """Snapshot of a failure at the moment it was trapped."""

    location: str
    operation: str
    exit_code: int
    timestamp: str
    error_category: str
    message: str
    stack: tuple = ()

    @classmethod
    def from_exception(cls, exc: BaseException, operation: str, exit_code: int) -> "ErrorContext":
        frames = traceback.extract_tb(exc.__traceback__) if exc.__traceback__ else []
        # innermost first, like a caller stack
        stack = tuple(
            f"{os.path.basename(fs.filename)}:{fs.lineno} in {fs.name}"
            for fs in reversed(frames)
        )
        return cls(
            location=stack[0] if stack else "unknown",
            operation=operation,
            exit_code=exit_code,
            timestamp=utc_timestamp(),
            error_category=category_for(exc),
            message=str(exc) or type(exc).__name__,
            stack=stack,
        )

    def to_fields(self) -> dict:
        return {
            "error_category": self.error_category,
            "location": self.location,
            "operation": self.operation,
            "exit_code": self.exit_code,
            "error": self.message,
            "stack": " <- ".join(self.stack),
        }


class ErrorTrap:
    """Context manager that turns any failure into one log event and an exit code."""

    def __init__(self, logger: StructuredLogger, operation: str = "main"):
        self.log = logger
        self.operation = operation
        self.started_at = None
        self.exit_code = None
        self.context = None
        self._cleanups = []
        self._children = []
        self._handling = False
        self._handled = False
        self._previous_sigterm = None

    # ------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------

    def register_cleanup(self, fn, *args, **kwargs) -> None:
        """Run fn(*args, **kwargs) when the trap exits, on success or failure."""
        self._cleanups.append((fn, args, kwargs))

    @contextmanager
    def track(self, process: subprocess.Popen):
        """Terminate process if the trap handles an error while it is running."""
        self._children.append(process)
        yield process
        # only reached on normal exit; on error the process stays registered
        self._children.remove(process)

    def fail(self, operation: str, exit_code: int, detail: str = ""):
        """Send a non-zero sub-step down the error path."""
        self.operation = operation
        raise OperationFailed(operation, exit_code, detail)

    def run_main(self, fn, *args, **kwargs) -> int:
        """Call fn inside the trap. Returns fn's int result (None -> 0)."""
        if self.operation == "main":
            self.operation = getattr(fn, "__name__", "main")
        with self:
            result = fn(*args, **kwargs)
        return result or 0

    # ------------------------------------------------------------
    # Context manager protocol
    # ------------------------------------------------------------

    def __enter__(self):
        self.started_at = utc_timestamp()
        self._install_sigterm()
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc is None or isinstance(exc, SystemExit):
                self._finish(self._system_exit_code(exc))
                return False
            code = self.handle(exc)
        finally:
            self._restore_sigterm()
            self._handling = False
        raise SystemExit(code)

    def handle(self, exc: BaseException, operation: str = None) -> int:
        """Log, terminate children, run cleanups. Only the first call does anything."""
        if self._handling or self._handled:
            return self.exit_code if self.exit_code is not None else 1
        self._handling = True
        try:
            if isinstance(exc, OperationFailed):
                operation = operation or exc.operation
            code = exit_code_for(exc)
            self.context = ErrorContext.from_exception(exc, operation or self.operation, code)
            self.log.error("script_error", **self.context.to_fields())
            self._terminate_children()
            self._run_cleanups()
            self.exit_code = code
            self._handled = True
        finally:
            self._handling = False
        return code

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    def _finish(self, code: int) -> None:
        # SIGTERM from here on must not interrupt cleanups; __exit__ clears the flag
        self._handling = True
        self._terminate_children()
        self._run_cleanups()
        self.exit_code = code
        self.log.debug(
            "Script finished",
            exit_code=code, operation=self.operation,
            started_at=self.started_at, finished_at=utc_timestamp(),
        )

    @staticmethod
    def _system_exit_code(exc) -> int:
        if exc is None or exc.code is None:
            return 0
        if isinstance(exc.code, int):
            return exc.code
        return 1

    def _run_cleanups(self) -> None:
        # newest first; a failing cleanup must not stop the rest
        while self._cleanups:
            fn, args, kwargs = self._cleanups.pop()
            try:
                fn(*args, **kwargs)
            except Exception as e:
                self.log.warn(
                    f"Cleanup failed: {getattr(fn, '__name__', fn)}: {e}",
                    error_category="internal",
                )

    def _terminate_children(self) -> None:
        while self._children:
            proc = self._children.pop()
            try:
                if proc.poll() is not None:
                    # leader already exited; sweep whatever it left in its group
                    signal_process_group(proc, signal.SIGKILL)
                    continue
                self.log.warn(f"Terminating child process {proc.pid}", pid=proc.pid)
                signal_process_group(proc, signal.SIGTERM)
                try:
                    proc.wait(timeout=TERMINATE_GRACE_SECONDS)
                except subprocess.TimeoutExpired:
                    pass
                signal_process_group(proc, signal.SIGKILL)
                proc.wait()
            except OSError as e:
                self.log.warn(f"Could not terminate child {proc.pid}: {e}", pid=proc.pid)

    def _on_sigterm(self, signum, frame):
        if self._handling or self._handled:
            return
        raise Terminated(signum)

    def _install_sigterm(self) -> None:
        try:
            self._previous_sigterm = signal.signal(signal.SIGTERM, self._on_sigterm)
        except ValueError:
            # not the main thread
            self._previous_sigterm = None

    def _restore_sigterm(self) -> None:
        if self._previous_sigterm is None:
            return
        try:
            signal.signal(signal.SIGTERM, self._previous_sigterm)
        except ValueError:
            pass
        self._previous_sigterm = None
