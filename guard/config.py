"""Configuration for aiguard.

Loads settings from .aiguard.toml (project-level) or ~/.aiguard.toml (user-level),
then the environment, then CLI flags. Later sources win:

    DEFAULTS -> config file -> environment -> CLI flags

The result is frozen into a GuardConfig which is handed to every component at
construction. Nothing reads configuration from globals after that point.
"""

import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path

from guard.command_guard import SecurityMode
from guard.errors import ConfigError
from guard.structured_log import parse_level

VERSION = "1.0.0"

# Default configuration values (same as CLI defaults)
DEFAULTS = {
    "log_level": 20,
    "log_format": "text",
    "log_file": None,
    "verbose": False,
    "dry_run": False,
    "read_only": False,
    "allowed_root": None,
    "security_mode": "safe",
    "command_timeout": 300,
    "max_output_size": 1024 * 1024,
    "reject_localhost": True,
    "warn_privileged_ports": True,
    "service_name": "aiguard",
    "service_version": VERSION,
    "scripts_dir": "scripts",
    "allowed_scripts": [],
    "agent_dry_run": True,
    "agent_max_seconds": 300,
}

# Environment variable -> config key
ENV_KEYS = {
    "LOG_LEVEL": "log_level",
    "LOG_FORMAT": "log_format",
    "LOG_FILE": "log_file",
    "VERBOSE": "verbose",
    "DRY_RUN": "dry_run",
    "READ_ONLY": "read_only",
    "ALLOWED_ROOT": "allowed_root",
    "SECURITY_MODE": "security_mode",
    "COMMAND_TIMEOUT": "command_timeout",
    "MAX_OUTPUT_SIZE": "max_output_size",
    "REJECT_LOCALHOST": "reject_localhost",
    "WARN_PRIVILEGED_PORTS": "warn_privileged_ports",
    "SERVICE_NAME": "service_name",
    "SERVICE_VERSION": "service_version",
    "AGENT_SCRIPTS_DIR": "scripts_dir",
    "AGENT_ALLOWED_SCRIPTS": "allowed_scripts",
    "AGENT_DRY_RUN": "agent_dry_run",
    "AGENT_MAX_SECONDS": "agent_max_seconds",
}

# Config file search order (first found wins)
CONFIG_FILENAMES = [".aiguard.toml", "aiguard.toml"]
CONFIG_SEARCH_DIRS = [
    ".",                          # Current directory (project-level)
    str(Path.home()),             # Home directory (user-level)
]

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _to_bool(key: str, value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {value!r}")


def _to_int(key: str, value, minimum: int = 0) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid integer for {key}: {value!r}")
    try:
        number = int(str(value).strip()) if not isinstance(value, int) else value
    except ValueError:
        raise ConfigError(f"Invalid integer for {key}: {value!r}") from None
    if number < minimum:
        raise ConfigError(f"{key} must be >= {minimum}: {number}")
    return number


def _to_list(value) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return tuple(str(v).strip() for v in value if str(v).strip())


@dataclass(frozen=True)
class GuardConfig:
    """Immutable configuration shared by all guard components."""

    log_level: int = 20
    log_format: str = "text"
    log_file: str | None = None
    verbose: bool = False
    dry_run: bool = False
    read_only: bool = False
    allowed_root: str = "."
    security_mode: SecurityMode = SecurityMode.SAFE
    command_timeout: int = 300
    max_output_size: int = 1024 * 1024
    reject_localhost: bool = True
    warn_privileged_ports: bool = True
    service_name: str = "aiguard"
    service_version: str = VERSION
    scripts_dir: str = "scripts"
    allowed_scripts: tuple[str, ...] = ()
    agent_dry_run: bool = True
    agent_max_seconds: int = 300
    config_file: str | None = None

    @property
    def effective_level(self) -> int:
        """Threshold actually applied by the logger (verbose forces DEBUG)."""
        return 10 if self.verbose else self.log_level

    @classmethod
    def from_dict(cls, values: dict) -> "GuardConfig":
        """Coerce and validate raw values (strings from env/TOML/CLI)."""
        v = dict(DEFAULTS)
        v.update(values)

        log_format = str(v["log_format"]).strip().lower()
        if log_format not in ("text", "json"):
            raise ConfigError(f"Invalid log_format: {v['log_format']!r} (use text or json)")

        try:
            log_level = parse_level(v["log_level"])
        except ValueError as e:
            raise ConfigError(str(e)) from None

        try:
            mode = SecurityMode.parse(v["security_mode"])
        except ValueError as e:
            raise ConfigError(str(e)) from None

        root = v["allowed_root"] or os.getcwd()

        return cls(
            log_level=log_level,
            log_format=log_format,
            log_file=v["log_file"] or None,
            verbose=_to_bool("verbose", v["verbose"]),
            dry_run=_to_bool("dry_run", v["dry_run"]),
            read_only=_to_bool("read_only", v["read_only"]),
            allowed_root=os.path.realpath(os.path.expanduser(str(root))),
            security_mode=mode,
            command_timeout=_to_int("command_timeout", v["command_timeout"], minimum=1),
            max_output_size=_to_int("max_output_size", v["max_output_size"], minimum=1),
            reject_localhost=_to_bool("reject_localhost", v["reject_localhost"]),
            warn_privileged_ports=_to_bool("warn_privileged_ports", v["warn_privileged_ports"]),
            service_name=str(v["service_name"]),
            service_version=str(v["service_version"]),
            scripts_dir=str(v["scripts_dir"]),
            allowed_scripts=_to_list(v["allowed_scripts"]),
            agent_dry_run=_to_bool("agent_dry_run", v["agent_dry_run"]),
            agent_max_seconds=_to_int("agent_max_seconds", v["agent_max_seconds"], minimum=1),
            config_file=v.get("_config_file"),
        )

    def to_dict(self) -> dict:
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        out["security_mode"] = self.security_mode.value
        out["allowed_scripts"] = list(self.allowed_scripts)
        return out


def find_config_file() -> str | None:
    """Find the first config file in the search path."""
    for directory in CONFIG_SEARCH_DIRS:
        for filename in CONFIG_FILENAMES:
            path = os.path.join(directory, filename)
            if os.path.isfile(path):
                return path
    return None


def load_config(config_path: str = None) -> dict:
    """Load configuration from file.

    Args:
        config_path: Explicit path to config file. If None, searches default locations.

    Returns:
        Dict of configuration values. Missing keys use DEFAULTS.

    Raises:
        ConfigError: explicit config_path missing, or the file is not valid TOML.
    """
    config = dict(DEFAULTS)

    if config_path and not os.path.isfile(config_path):
        raise ConfigError(f"Config file not found: {config_path}")

    path = config_path or find_config_file()
    if not path:
        return config

    try:
        with open(path, "rb") as f:
            file_config = tomllib.load(f)
    except OSError:
        return config
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from None

    # Normalize key names (TOML uses - or _, CLI uses _)
    for key, value in file_config.items():
        norm_key = key.replace("-", "_")
        if norm_key in config:
            config[norm_key] = value

    config["_config_file"] = path
    return config


def apply_env(config: dict, environ: dict = None) -> dict:
    """Overlay environment variables on config values."""
    environ = os.environ if environ is None else environ
    result = dict(config)
    for env_name, key in ENV_KEYS.items():
        if env_name in environ:
            result[key] = environ[env_name]
    return result


def merge_cli_args(config: dict, args) -> dict:
    """Merge CLI arguments over config values.

    CLI args that are None or False (defaults) don't override config.
    Explicitly set CLI args always win.
    """
    result = dict(config)

    # Map argparse attribute names to config keys
    mappings = {
        "log_level": "log_level",
        "log_json": "log_format",
        "log_file": "log_file",
        "verbose": "verbose",
        "dry_run": "dry_run",
        "read_only": "read_only",
        "allowed_root": "allowed_root",
        "mode": "security_mode",
        "scripts_dir": "scripts_dir",
    }

    for arg_name, config_key in mappings.items():
        cli_value = getattr(args, arg_name, None)
        if cli_value is None:
            continue
        # For boolean flags: only override if True (explicitly set)
        if isinstance(cli_value, bool) and not cli_value:
            continue
        if arg_name == "log_json":
            cli_value = "json"
        result[config_key] = cli_value

    return result


def build_config(config_path: str = None, args=None, environ: dict = None,
                 use_file: bool = True) -> GuardConfig:
    """DEFAULTS -> config file -> environment -> CLI args, frozen."""
    values = load_config(config_path) if use_file else dict(DEFAULTS)
    values = apply_env(values, environ)
    if args is not None:
        values = merge_cli_args(values, args)
    return GuardConfig.from_dict(values)


def generate_sample_config() -> str:
    """Generate a sample .aiguard.toml config file."""
    return '''# aiguard configuration
# Place this file at .aiguard.toml (project) or ~/.aiguard.toml (user).
# Environment variables (LOG_LEVEL, DRY_RUN, ...) and CLI flags override it.

# Logging
log_level = 20            # 10=DEBUG, 20=INFO, 30=WARN, 40=ERROR
log_format = "text"       # "text" or "json"
# log_file = "/var/log/aiguard.log"

# Execution posture
security_mode = "safe"    # safe, restricted, permissive, explicit-allow
dry_run = false
read_only = false
command_timeout = 300
max_output_size = 1048576
# allowed_root = "/opt/app"

# Input validation policy
reject_localhost = true
warn_privileged_ports = true

# Agent script tool
scripts_dir = "scripts"
allowed_scripts = []
agent_dry_run = true
agent_max_seconds = 300
'''
