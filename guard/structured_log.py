"""Structured, trace-correlated logging for aiguard.

Every event is a single line on the diagnostic stream (stderr by default,
never stdout) carrying a timestamp, level, message, the script identity and
the process TraceContext. Two encodings:

    text:  [2025-01-01T00:00:00Z] [INFO] [deploy.py:4242 trace=... span=...] started op=backup
    json:  {"timestamp": ..., "level": "INFO", "message": "started",
            "service": {...}, "trace": {...}, "process": {...}, "custom": {"op": "backup"}}

Caller-supplied key/values always go under "custom" so they can never collide
with reserved fields. Logging never raises: serialization problems degrade to
a plain-text line, stream problems to a best-effort write on the original
stderr.
"""

import json
import os
import secrets
import shlex
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

from guard.errors import InternalError


DEBUG = 10
INFO = 20
WARN = 30
ERROR = 40

LEVEL_NAMES = {DEBUG: "DEBUG", INFO: "INFO", WARN: "WARN", ERROR: "ERROR"}
_NAME_TO_LEVEL = {"DEBUG": DEBUG, "INFO": INFO, "WARN": WARN, "WARNING": WARN, "ERROR": ERROR}


def parse_level(value) -> int:
    """Accept a numeric level (10, "30") or a name ("debug", "WARN")."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid log level: {value!r}")
    if isinstance(value, int):
        level = value
    else:
        text = str(value).strip().upper()
        if text in _NAME_TO_LEVEL:
            return _NAME_TO_LEVEL[text]
        try:
            level = int(text)
        except ValueError:
            raise ValueError(f"Invalid log level: {value!r}") from None
    if level < 0:
        raise ValueError(f"Invalid log level: {value!r}")
    return level


def level_name(level: int) -> str:
    return LEVEL_NAMES.get(level, str(level))


def utc_timestamp() -> str:
    """UTC, second precision: 2025-01-01T00:00:00Z."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class TraceContext:
    """Correlation identifiers for one process invocation."""

    trace_id: str
    span_id: str
    service_name: str = "aiguard"
    service_version: str = "0"

    @classmethod
    def new(cls, service_name: str = "aiguard", service_version: str = "0") -> "TraceContext":
        return cls(
            trace_id=secrets.token_hex(16),
            span_id=secrets.token_hex(8),
            service_name=service_name,
            service_version=service_version,
        )

    @classmethod
    def from_env(cls, service_name: str = "aiguard", service_version: str = "0",
                 environ: dict = None) -> "TraceContext":
        """Inherit TRACE_ID / SPAN_ID from a calling process, else generate."""
        environ = os.environ if environ is None else environ
        return cls(
            trace_id=environ.get("TRACE_ID") or secrets.token_hex(16),
            span_id=environ.get("SPAN_ID") or secrets.token_hex(8),
            service_name=service_name,
            service_version=service_version,
        )

    def child_env(self) -> dict:
        """Environment entries that let a spawned script join this trace."""
        return {"TRACE_ID": self.trace_id, "SPAN_ID": self.span_id}


@dataclass(frozen=True)
class LogEvent:
    """One structured log line. Built once, serialized once."""

    timestamp: str
    level: int
    message: str
    trace: TraceContext
    script: str
    pid: int
    custom: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = {
            "timestamp": self.timestamp,
            "level": level_name(self.level),
            "message": self.message,
            "service": {
                "name": self.trace.service_name,
                "version": self.trace.service_version,
            },
            "trace": {
                "trace_id": self.trace.trace_id,
                "span_id": self.trace.span_id,
            },
            "process": {
                "script": self.script,
                "pid": self.pid,
            },
        }
        if self.custom:
            out["custom"] = dict(self.custom)
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)

    def to_text(self) -> str:
        head = (
            f"[{self.timestamp}] [{level_name(self.level)}] "
            f"[{self.script}:{self.pid} trace={self.trace.trace_id} span={self.trace.span_id}] "
            f"{self.message}"
        )
        if not self.custom:
            return head
        pairs = " ".join(f"{k}={shlex.quote(str(v))}" for k, v in self.custom.items())
        return f"{head} {pairs}"


class StructuredLogger:
    """Leveled event emitter bound to one TraceContext."""

    def __init__(
        self,
        level: int = INFO,
        fmt: str = "text",
        trace: TraceContext = None,
        script: str = None,
        stream=None,
        log_file: str = None,
    ):
        """Initialize the logger.

        Args:
            level: Threshold; events below it are dropped before formatting.
            fmt: "text" or "json".
            trace: Correlation ids. Generated when omitted.
            script: Script identity. Defaults to the basename of sys.argv[0].
            stream: Diagnostic stream. Defaults to sys.stderr at write time.
            log_file: Append to this file instead of the stream.
        """
        self.level = level
        self.fmt = fmt
        self.trace = trace or TraceContext.new()
        self.script = script or os.path.basename(sys.argv[0] or "") or "aiguard"
        self.pid = os.getpid()
        self.stream = stream
        self.log_file = log_file
        self._fd = None
        self._event_count = 0
        # most recent failure recovered inside the logger; never raised
        self.last_error = None

    @classmethod
    def from_config(cls, config, trace: TraceContext = None, stream=None,
                    script: str = None) -> "StructuredLogger":
        trace = trace or TraceContext.from_env(config.service_name, config.service_version)
        return cls(
            level=config.effective_level,
            fmt=config.log_format,
            trace=trace,
            script=script,
            stream=stream,
            log_file=config.log_file,
        )

    def enabled_for(self, level: int) -> bool:
        return level >= self.level

    def emit(self, level: int, message: str, *pairs, **fields) -> None:
        """Emit one event. Never raises.

        Args:
            level: DEBUG, INFO, WARN or ERROR.
            message: Human-readable message.
            *pairs: Alternating key, value arguments (trailing key is dropped).
            **fields: Additional key/values; merged after pairs.
        """
        if level < self.level:
            return

        custom = {}
        for key, value in zip(pairs[0::2], pairs[1::2]):
            custom[str(key)] = value
        custom.update(fields)

        event = LogEvent(
            timestamp=utc_timestamp(),
            level=level,
            message=str(message),
            trace=self.trace,
            script=self.script,
            pid=self.pid,
            custom=custom,
        )
        try:
            line = event.to_json() if self.fmt == "json" else event.to_text()
        except (TypeError, ValueError, RecursionError) as e:
            self.last_error = InternalError(f"log serialization failed: {type(e).__name__}: {e}")
            line = (
                f"[{event.timestamp}] [{level_name(level)}] "
                f"[{self.script}:{self.pid} trace={self.trace.trace_id}] "
                f"{event.message} (log serialization failed: {type(e).__name__})"
            )
        self._write(line)

    def debug(self, message: str, *pairs, **fields) -> None:
        self.emit(DEBUG, message, *pairs, **fields)

    def info(self, message: str, *pairs, **fields) -> None:
        self.emit(INFO, message, *pairs, **fields)

    def warn(self, message: str, *pairs, **fields) -> None:
        self.emit(WARN, message, *pairs, **fields)

    def error(self, message: str, *pairs, **fields) -> None:
        self.emit(ERROR, message, *pairs, **fields)

    def metric(self, name: str, duration_s: float, **labels) -> None:
        """Log a performance metric."""
        self.emit(INFO, f"metric {name}", metric_name=name,
                  duration_seconds=round(duration_s, 3), **labels)

    @contextmanager
    def timed(self, operation: str, **labels):
        """Time a block and emit a metric when it ends, even on error."""
        start = time.monotonic()
        status = "ok"
        try:
            yield
        except BaseException:
            status = "error"
            raise
        finally:
            self.metric(operation, time.monotonic() - start, status=status, **labels)

    def _write(self, line: str) -> None:
        """Write one complete line in a single call so concurrent writers interleave by line."""
        data = line + "\n"
        try:
            if self.log_file:
                if self._fd is None:
                    self._fd = os.open(self.log_file, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o640)
                os.write(self._fd, data.encode("utf-8", errors="replace"))
            else:
                stream = self.stream or sys.stderr
                stream.write(data)
                stream.flush()
            self._event_count += 1
        except (OSError, ValueError) as e:
            # ValueError: stream already closed
            self.last_error = InternalError(f"log write failed: {e}")
            try:
                sys.__stderr__.write(data)
                sys.__stderr__.flush()
            except (OSError, ValueError, AttributeError):
                pass

    def close(self) -> None:
        """Close the log file if one is open."""
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None

    @property
    def event_count(self) -> int:
        return self._event_count
