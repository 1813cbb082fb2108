"""Run allow-listed operational scripts on behalf of an AI agent.

Every response is a JSON-serializable dict. Refusals come back as
``status: "error"`` with the error category instead of raising, so an agent
framework can show the reason to the model.
"""

import os
import re
import time

from guard.command_guard import CommandRequest, ExecStatus, SecurityMode
from guard.errors import GuardBaseError, ValidationError
from guard.runtime import Guard
from guard.structured_log import utc_timestamp


USAGE_TIMEOUT_SECONDS = 30
HEADER_SCAN_LINES = 40

_HEADER_RE = re.compile(r'^#\s*(PURPOSE|VERSION):\s*(.*?)\s*$')

_STATUS_NAMES = {
    ExecStatus.SUCCESS: "success",
    ExecStatus.FAILED: "error",
    ExecStatus.TIMEOUT: "timeout",
    ExecStatus.DRY_RUN: "dry-run",
}

SECURITY_NOTES = [
    "All parameters are validated for security",
    "Execution is limited by timeout",
    "All operations are logged for audit",
    "Dry-run mode is enforced by default",
]


def read_script_metadata(path: str) -> dict:
    """Read '# PURPOSE:' and '# VERSION:' header lines."""
    meta = {"purpose": "No description available", "version": "unknown"}
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            for i, line in enumerate(f):
                if i >= HEADER_SCAN_LINES:
                    break
                m = _HEADER_RE.match(line)
                if m:
                    meta[m.group(1).lower()] = m.group(2)
    except OSError:
        pass
    return meta


class ScriptExecutor:
    """Agent-facing tool: list, describe and execute allow-listed scripts."""

    def __init__(self, guard: Guard):
        self.guard = guard
        cfg = guard.config
        scripts_dir = cfg.scripts_dir
        if not os.path.isabs(scripts_dir):
            scripts_dir = os.path.join(cfg.allowed_root, scripts_dir)
        self.scripts_dir = os.path.realpath(scripts_dir)
        self.allowed = tuple(cfg.allowed_scripts)
        self.dry_run_enforced = cfg.agent_dry_run
        self.max_seconds = cfg.agent_max_seconds

    def list_scripts(self) -> dict:
        scripts = []
        for name in self.allowed:
            path = os.path.join(self.scripts_dir, name)
            if not os.path.isfile(path):
                continue
            meta = read_script_metadata(path)
            scripts.append({
                "name": name,
                "purpose": meta["purpose"],
                "version": meta["version"],
                "executable": os.access(path, os.X_OK),
            })
        self.guard.log.info("Agent listed available scripts", count=len(scripts))
        return {
            "status": "success",
            "scripts_dir": self.scripts_dir,
            "scripts": scripts,
            "dry_run_enforced": self.dry_run_enforced,
            "timestamp": utc_timestamp(),
        }

    def script_usage(self, name: str) -> dict:
        """Run the script with --help (no dry-run flag) and return its output."""
        self.guard.log.info(f"Agent requested usage for: {name}", script=name)
        try:
            path = self._resolve(name)
            result = self.guard.commands.run(CommandRequest(
                command=path,
                args=("--help",),
                mode=SecurityMode.EXPLICIT_ALLOW,
                allow_list=frozenset({os.path.basename(path)}),
                timeout=USAGE_TIMEOUT_SECONDS,
            ))
        except GuardBaseError as e:
            return self._error_response(name, e)

        usage = (result.stdout + result.stderr).strip()
        if not usage or result.status is ExecStatus.TIMEOUT:
            usage = "Usage information not available"
        return {
            "status": "success",
            "script_name": name,
            "usage_information": usage,
            "metadata": read_script_metadata(path),
            "dry_run_enforced": self.dry_run_enforced,
            "security_notes": list(SECURITY_NOTES),
            "timestamp": utc_timestamp(),
        }

    def execute_script(self, name: str, params=()) -> dict:
        """Validate and run one allow-listed script.

        Args:
            name: Script file name; must appear in allowed_scripts.
            params: Arguments passed to the script.

        Returns:
            dict with execution_id, status, exit_code, duration_seconds,
            output.stdout / output.stderr and timestamp.
        """
        execution_id = f"exec_{int(time.time())}_{os.getpid()}"
        params = [str(p) for p in params]
        log = self.guard.log
        log.info(f"Agent execution requested: {name}", execution_id=execution_id,
                 script=name, param_count=len(params))

        try:
            path = self._resolve(name)
            self.guard.validator.validate_agent_parameters(params)
            args = list(params)
            if self.dry_run_enforced and "--dry-run" not in args:
                args.append("--dry-run")
            start = time.monotonic()
            result = self.guard.commands.run(CommandRequest(
                command=path,
                args=tuple(args),
                mode=SecurityMode.EXPLICIT_ALLOW,
                allow_list=frozenset({os.path.basename(path)}),
                timeout=self.max_seconds,
            ))
            duration = time.monotonic() - start
        except GuardBaseError as e:
            response = self._error_response(name, e)
            response["execution_id"] = execution_id
            return response

        status = _STATUS_NAMES[result.status]
        log.metric("agent_script", duration, script=name, status=status,
                   execution_id=execution_id)
        return {
            "execution_id": execution_id,
            "script_name": name,
            "status": status,
            "exit_code": result.exit_code,
            "duration_seconds": round(duration, 3),
            "dry_run": self.dry_run_enforced,
            "output": {
                "stdout": result.stdout,
                "stderr": result.stderr,
                "truncated": result.truncated,
            },
            "timestamp": utc_timestamp(),
        }

    def _resolve(self, name: str) -> str:
        """Allow-list membership, then execute-access path resolution under scripts_dir."""
        if not name or name not in self.allowed or os.path.basename(name) != name:
            self.guard.log.error(
                f"Script not in allow-list: {name}",
                error_category="validation", field="script", reason="not allow-listed",
            )
            raise ValidationError("script", f"'{name}' is not an allowed script")
        return self.guard.paths.resolve(
            os.path.join(self.scripts_dir, name), "x", allowed_root=self.scripts_dir,
        )

    @staticmethod
    def _error_response(name: str, exc: GuardBaseError) -> dict:
        return {
            "script_name": name,
            "status": "error",
            "exit_code": exc.exit_code,
            "error": exc.message,
            "error_category": exc.error_category,
            "timestamp": utc_timestamp(),
        }
