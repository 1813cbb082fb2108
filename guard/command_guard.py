"""Tiered command execution sandbox.

A command is executed only if, in this order:

1. its executable basename passes the check for the request's SecurityMode
   (and the caller's allow-list, and read-only mode),
2. it does not match a catastrophic pattern (blocked in every mode),
3. neither the command nor any argument contains a shell metacharacter.

Commands are always spawned from an argument vector, never through a shell,
so metacharacter detection is a second line and not the only one.

Rejections raise GuardError before any process exists. A command that runs
and exits non-zero is returned as data (ExecutionResult); so is a timeout.
Every run() produces exactly one log event describing mode, decision and
outcome.
"""

import enum
import os
import re
import shlex
import signal
import subprocess
import tempfile
import time
from contextlib import nullcontext
from dataclasses import dataclass

from guard.errors import CommandTimeout, ExecutionFailure, GuardError
from guard.error_trap import signal_process_group
from guard.structured_log import ERROR, WARN, StructuredLogger
from guard.validation import find_shell_metacharacters


TIMEOUT_EXIT_CODE = 124
NOT_EXECUTABLE_EXIT_CODE = 126
NOT_FOUND_EXIT_CODE = 127

DEFAULT_TIMEOUT = 300
MAX_OUTPUT_SIZE = 1024 * 1024


class SecurityMode(enum.Enum):
    SAFE = "safe"
    RESTRICTED = "restricted"
    PERMISSIVE = "permissive"
    EXPLICIT_ALLOW = "explicit-allow"

    @classmethod
    def parse(cls, value) -> "SecurityMode":
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower().replace("_", "-")
        for mode in cls:
            if text == mode.value:
                return mode
        choices = ", ".join(m.value for m in cls)
        raise ValueError(f"Invalid security mode: {value!r} (use {choices})")


class ExecStatus(enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    DRY_RUN = "dry-run"


# ============================================================
# Static tables, built once at import
# ============================================================

# SAFE mode: read/inspect utilities only
SAFE_COMMANDS = frozenset({
    # File inspection
    "cat", "head", "tail", "ls", "stat", "wc", "file", "tree",
    "grep", "egrep", "fgrep", "diff", "cmp", "sort", "uniq", "cut", "tr",
    "nl", "column", "od", "hexdump", "strings", "jq",
    "md5sum", "sha1sum", "sha256sum", "sha512sum",
    "basename", "dirname", "realpath", "readlink", "pwd",
    # System inspection (read-only)
    "df", "du", "ps", "uname", "id", "whoami", "hostname", "date",
    "uptime", "free", "nproc", "lscpu", "lsblk", "lsof", "getent",
    "which", "ss", "netstat", "journalctl",
    # Output
    "echo", "printf", "true", "false", "test",
})

# Commands known to alter system state. Rejected in RESTRICTED mode and
# whenever read-only is set.
MUTATOR_COMMANDS = frozenset({
    # Destructive file operations
    "rm", "rmdir", "unlink", "mv", "cp", "ln", "chmod", "chown", "chgrp",
    "dd", "mkfs", "shred", "truncate", "wipefs", "fdisk", "parted",
    "mount", "umount",
    # Service and power control
    "systemctl", "service", "init", "telinit", "reboot", "shutdown",
    "halt", "poweroff", "kill", "killall", "pkill", "crontab",
    # Package managers
    "apt", "apt-get", "dpkg", "yum", "dnf", "zypper", "rpm", "pacman",
    "apk", "snap", "brew", "pip", "pip3", "npm", "gem",
    # Container / orchestration / provisioning
    "docker", "podman", "nerdctl", "crictl", "kubectl", "helm",
    "terraform", "ansible", "ansible-playbook",
    # Accounts and firewall
    "useradd", "userdel", "usermod", "passwd", "iptables", "nft",
})

_OCTAL_MODE_RE = re.compile(r'^[0-7]{1,4}$')
_SYMBOLIC_CLAUSE_RE = re.compile(r'^([ugoa]*)([+=])([rwxXst]*)$')


def _command_key(basename: str) -> str:
    """mkfs.ext4 -> mkfs; plain names unchanged."""
    return basename.split(".", 1)[0] if "." in basename else basename


def _split_flags(args) -> tuple[set[str], list[str]]:
    """Return (flags, operands). Short flag clusters are expanded: -rf -> {-r, -f}."""
    flags: set[str] = set()
    operands: list[str] = []
    end_of_flags = False
    for arg in args:
        if end_of_flags or not arg.startswith("-") or arg == "-":
            operands.append(arg)
        elif arg == "--":
            end_of_flags = True
        elif arg.startswith("--"):
            flags.add(arg)
        else:
            flags.update(f"-{ch}" for ch in arg[1:])
    return flags, operands


def _normalize_target(target: str, cwd: str = None) -> str:
    """Absolute, '..'-free form of a path operand. Relative paths are joined to cwd."""
    path = os.path.expanduser(target.strip())
    if not os.path.isabs(path):
        path = os.path.join(cwd or os.getcwd(), path)
    # normpath keeps a leading '//' on POSIX
    return "/" + os.path.normpath(path).lstrip("/")


def _is_root_level(target: str, cwd: str = None) -> bool:
    """'/', '/*', '/etc', '/usr/../etc', '/etc/*', '~', '*' are root-level."""
    t = target.strip()
    if t in ("*", ".*", "~", "~/", "~/*"):
        return True
    if t.endswith("/*"):
        t = t[:-2] or "/"
    segments = [s for s in _normalize_target(t, cwd).split("/") if s]
    return len(segments) <= 1


def _is_device(target: str, cwd: str = None) -> bool:
    return _normalize_target(target, cwd).startswith("/dev/")


def _grants_world_write(mode_arg: str) -> bool:
    if _OCTAL_MODE_RE.match(mode_arg):
        return bool(int(mode_arg[-1]) & 2)
    for clause in mode_arg.split(","):
        m = _SYMBOLIC_CLAUSE_RE.match(clause)
        if not m:
            continue
        who, _op, perms = m.groups()
        if "w" in perms and (who == "" or "o" in who or "a" in who):
            return True
    return False


def find_catastrophic_pattern(basename: str, args, cwd: str = None) -> str | None:
    """Return a description if the invocation is catastrophic in any mode.

    Path operands are compared in normalized form, so '/usr/../etc' and
    '//dev/sda' match like '/etc' and '/dev/sda'. Relative operands are
    resolved against cwd (the process working directory when omitted).
    """
    key = _command_key(basename)
    args = list(args)
    flags, operands = _split_flags(args)

    if key == "rm":
        if "--no-preserve-root" in flags:
            return "rm --no-preserve-root"
        recursive = bool({"-r", "-R", "--recursive"} & flags)
        force = bool({"-f", "--force"} & flags)
        if recursive and force:
            for target in operands:
                if _is_root_level(target, cwd):
                    return f"recursive force-delete of root-level path '{target}'"

    if key == "dd":
        for arg in args:
            if arg.startswith("of=") and _is_device(arg[3:], cwd):
                return f"raw device write ({arg})"

    if key == "mkfs":
        for arg in operands:
            if _is_device(arg, cwd):
                return f"filesystem format of device '{arg}'"

    if key == "chmod" and operands:
        if _grants_world_write(operands[0]):
            return f"world-writable permission grant ({operands[0]})"

    return None


# ============================================================
# Requests and results
# ============================================================

@dataclass(frozen=True)
class CommandRequest:
    """A pending external-process invocation.

    mode None means "the guard's configured default". allow_list narrows
    every mode; in EXPLICIT_ALLOW it is the only thing that admits a command.
    """

    command: str
    args: tuple = ()
    mode: SecurityMode | None = None
    allow_list: frozenset | None = None
    dry_run: bool = False
    timeout: float | None = None
    cwd: str | None = None
    env: dict | None = None


@dataclass
class ExecutionResult:
    argv: list
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    status: ExecStatus = ExecStatus.SUCCESS
    duration_ms: int = 0
    mode: SecurityMode = SecurityMode.SAFE
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.status in (ExecStatus.SUCCESS, ExecStatus.DRY_RUN)

    def check(self) -> "ExecutionResult":
        """Raise CommandTimeout / ExecutionFailure unless the command succeeded."""
        if self.status is ExecStatus.TIMEOUT:
            raise CommandTimeout(self)
        if self.status is ExecStatus.FAILED:
            raise ExecutionFailure(self)
        return self

    def to_dict(self) -> dict:
        return {
            "argv": list(self.argv),
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "mode": self.mode.value,
            "truncated": self.truncated,
        }


# ============================================================
# Guard
# ============================================================

class CommandGuard:
    """Decides whether a command may run, runs it, and logs the decision."""

    def __init__(
        self,
        logger: StructuredLogger,
        mode: SecurityMode = SecurityMode.SAFE,
        read_only: bool = False,
        dry_run: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        max_output_size: int = MAX_OUTPUT_SIZE,
        trap=None,
    ):
        self.log = logger
        self.mode = mode
        self.read_only = read_only
        self.dry_run = dry_run
        self.timeout = timeout
        self.max_output_size = max_output_size
        self.trap = trap

    @classmethod
    def from_config(cls, config, logger: StructuredLogger, trap=None) -> "CommandGuard":
        return cls(
            logger,
            mode=config.security_mode,
            read_only=config.read_only,
            dry_run=config.dry_run,
            timeout=config.command_timeout,
            max_output_size=config.max_output_size,
            trap=trap,
        )

    def execute(self, command: str, *args: str, mode=None, allow=None, dry_run: bool = False,
                timeout: float = None, cwd: str = None, env: dict = None) -> ExecutionResult:
        """Convenience wrapper: build a CommandRequest and run it."""
        request = CommandRequest(
            command=command,
            args=tuple(args),
            mode=SecurityMode.parse(mode) if mode is not None else None,
            allow_list=frozenset(allow) if allow is not None else None,
            dry_run=dry_run,
            timeout=timeout,
            cwd=cwd,
            env=env,
        )
        return self.run(request)

    def run(self, request: CommandRequest) -> ExecutionResult:
        """Authorize, then dry-run or execute.

        Raises:
            GuardError: the command was refused; nothing was spawned.
        """
        mode = request.mode or self.mode
        argv = self.authorize(request)
        display = shlex.join(argv)

        if request.dry_run or self.dry_run:
            self.log.info(
                f"DRY RUN: {display}",
                mode=mode.value, decision="allowed", outcome=ExecStatus.DRY_RUN.value,
            )
            return ExecutionResult(argv=argv, exit_code=0, status=ExecStatus.DRY_RUN, mode=mode)

        timeout = request.timeout if request.timeout is not None else self.timeout
        result = self._spawn(argv, request, mode, timeout)

        fields = {
            "mode": mode.value,
            "decision": "allowed",
            "outcome": result.status.value,
            "exit_code": result.exit_code,
            "duration_ms": result.duration_ms,
        }
        if result.status is ExecStatus.SUCCESS:
            self.log.info(f"RUN: {display}", **fields)
        elif result.status is ExecStatus.TIMEOUT:
            self.log.emit(ERROR, f"Command timed out after {timeout}s: {display}",
                          error_category="timeout", **fields)
        else:
            self.log.emit(WARN, f"Command failed (exit {result.exit_code}): {display}",
                          error_category="execution", **fields)
        return result

    def authorize(self, request: CommandRequest) -> list[str]:
        """Run every pre-execution check and return the argv that may be spawned.

        Raises:
            GuardError: not-allowed, dangerous-pattern or metacharacter-detected.
        """
        mode = request.mode or self.mode
        command = request.command
        args = list(request.args)

        if not command:
            self._reject(GuardError.NOT_ALLOWED, "", mode, "missing command")

        # Step 1: basename, with sudo unwrapped so checks apply to the real command
        basename = os.path.basename(command)
        while basename == "sudo":
            if not args or args[0].startswith("-"):
                self._reject(GuardError.NOT_ALLOWED, command, mode,
                             "sudo requires a plain command (options are not supported)")
            self.log.warn(f"sudo stripped: running '{args[0]}' without elevation",
                          mode=mode.value, command=args[0])
            command, args = args[0], args[1:]
            basename = os.path.basename(command)

        # Step 2: mode membership
        self._check_mode(basename, mode, request.allow_list)

        # Step 3: catastrophic patterns, every mode
        danger = find_catastrophic_pattern(basename, args, cwd=request.cwd)
        if danger:
            self._reject(GuardError.DANGEROUS_PATTERN, command, mode, danger)

        # Step 4: shell metacharacters in the command or any argument
        for part in [command] + args:
            found = find_shell_metacharacters(part)
            if found:
                self._reject(GuardError.METACHARACTER_DETECTED, command, mode,
                             f"{found} in argument '{part[:80]}'")

        return [command] + args

    def _check_mode(self, basename: str, mode: SecurityMode, allow_list) -> None:
        key = _command_key(basename)
        is_mutator = basename in MUTATOR_COMMANDS or key in MUTATOR_COMMANDS

        if self.read_only and is_mutator:
            self._reject(GuardError.NOT_ALLOWED, basename, mode,
                         f"read-only mode: refusing mutator '{basename}'")

        if mode is SecurityMode.EXPLICIT_ALLOW:
            if not allow_list or basename not in allow_list:
                self._reject(GuardError.NOT_ALLOWED, basename, mode,
                             f"command '{basename}' not in allow-list")
            return

        if mode is SecurityMode.SAFE and basename not in SAFE_COMMANDS:
            self._reject(GuardError.NOT_ALLOWED, basename, mode,
                         f"command '{basename}' is not a read-only inspection command")
        if mode is SecurityMode.RESTRICTED and is_mutator:
            self._reject(GuardError.NOT_ALLOWED, basename, mode,
                         f"command '{basename}' mutates system state")

        if allow_list is not None and basename not in allow_list:
            self._reject(GuardError.NOT_ALLOWED, basename, mode,
                         f"command '{basename}' not in allow-list")

    def _reject(self, reason: str, command: str, mode: SecurityMode, detail: str):
        err = GuardError(reason, command, detail)
        self.log.error(
            f"Command rejected ({reason}): {command} - {detail}",
            mode=mode.value, decision="rejected", **err.to_fields(),
        )
        raise err

    def _spawn(self, argv: list[str], request: CommandRequest, mode: SecurityMode,
               timeout: float) -> ExecutionResult:
        """Spawn argv (no shell), wait with a deadline, capture output."""
        env = dict(os.environ)
        env.update(self.log.trace.child_env())
        if request.env:
            env.update(request.env)

        start = time.monotonic()

        # Anonymous temp files: unlinked at creation, nothing to clean up later
        with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    cwd=request.cwd,
                    env=env,
                    start_new_session=True,
                )
            except FileNotFoundError:
                return ExecutionResult(
                    argv=argv, exit_code=NOT_FOUND_EXIT_CODE,
                    stderr=f"command not found: {argv[0]}", status=ExecStatus.FAILED,
                    duration_ms=self._elapsed_ms(start), mode=mode,
                )
            except OSError as e:
                return ExecutionResult(
                    argv=argv, exit_code=NOT_EXECUTABLE_EXIT_CODE,
                    stderr=f"cannot execute {argv[0]}: {e}", status=ExecStatus.FAILED,
                    duration_ms=self._elapsed_ms(start), mode=mode,
                )

            tracker = self.trap.track(proc) if self.trap is not None else nullcontext()
            with tracker:
                try:
                    exit_code = proc.wait(timeout=timeout)
                    status = ExecStatus.SUCCESS if exit_code == 0 else ExecStatus.FAILED
                except subprocess.TimeoutExpired:
                    signal_process_group(proc, signal.SIGKILL)
                    proc.wait()
                    exit_code = TIMEOUT_EXIT_CODE
                    status = ExecStatus.TIMEOUT
                except BaseException:
                    # Interrupted: never leave the child or its descendants running
                    signal_process_group(proc, signal.SIGKILL)
                    proc.wait()
                    raise

            stdout, out_truncated = self._read_capture(out)
            stderr, err_truncated = self._read_capture(err)

        return ExecutionResult(
            argv=argv,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            status=status,
            duration_ms=self._elapsed_ms(start),
            mode=mode,
            truncated=out_truncated or err_truncated,
        )

    def _read_capture(self, f) -> tuple[str, bool]:
        """Read at most max_output_size bytes of captured output."""
        f.seek(0)
        raw = f.read(self.max_output_size + 1)
        truncated = len(raw) > self.max_output_size
        text = raw[:self.max_output_size].decode("utf-8", errors="replace")
        if truncated:
            text += f"\n[...truncated at {self.max_output_size:,} bytes]"
        return text, truncated

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
