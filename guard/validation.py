"""Input validation for parameters supplied by AI agents and other callers.

Each validator takes (value, field_name, bounds...) and either returns a
passing ValidationResult or raises ValidationError. Validation is fail-fast:
the first rule that does not hold ends the call. Nothing is ever sanitized or
auto-corrected; a rejected value is rejected.

Shell metacharacter detection is a denylist. It cannot be proven complete,
which is why CommandGuard never hands arguments to a shell in the first place.
"""

import re
import shutil
from dataclasses import dataclass
from typing import Any, Callable

from guard.errors import ValidationError
from guard.structured_log import StructuredLogger


# ============================================================
# Patterns
# ============================================================

_ALNUM_SAFE_RE = re.compile(r'^[A-Za-z0-9_-]+$')

# RFC 1123 labels: 1-63 chars, alphanumeric at both ends, hyphens inside
_HOSTNAME_RE = re.compile(
    r'^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?'
    r'(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$'
)

_EMAIL_RE = re.compile(r'^[\w.%+-]+@[\w.-]+\.[A-Za-z]{2,}$', re.ASCII)

_DIGITS_RE = re.compile(r'^[0-9]+$')

# Characters that let a shell chain, redirect, substitute or glob-expand
SHELL_METACHARACTERS = ";&|<>$`(){}[]\\"

_SUBSTITUTION_RES = [
    re.compile(r'\$\(.*\)', re.DOTALL),   # $(cmd)
    re.compile(r'`.*`', re.DOTALL),       # `cmd`
]

MAX_HOSTNAME_LENGTH = 253
MAX_EMAIL_LENGTH = 254
MAX_TIMEOUT_SECONDS = 86400
MAX_AGENT_PARAM_LENGTH = 1000


def find_shell_metacharacters(text: str) -> str | None:
    """Return a description of the first blocked shell construct in text, or None."""
    for pattern in _SUBSTITUTION_RES:
        if pattern.search(text):
            return "command substitution"
    for ch in SHELL_METACHARACTERS:
        if ch in text:
            return f"dangerous character '{ch}'"
    return None


def _preview(value: Any, limit: int = 80) -> str:
    text = str(value)
    return text if len(text) <= limit else text[:limit] + "..."


@dataclass(frozen=True)
class ValidationRule:
    """One predicate applied to one parameter.

    ``reason`` is a str.format template; {field} and {value} are available.
    """

    name: str
    predicate: Callable[[Any], bool]
    reason: str


@dataclass(frozen=True)
class ValidationResult:
    value: Any
    passed: bool
    reason: str | None = None
    field: str = ""


def _non_empty(v) -> bool:
    return v is not None and str(v) != ""


def _digits(v) -> bool:
    return not isinstance(v, bool) and bool(_DIGITS_RE.match(str(v)))


ALPHANUMERIC_SAFE_RULES = (
    ValidationRule("non_empty", _non_empty, "empty input not allowed"),
    ValidationRule(
        "alphanumeric_safe",
        lambda v: bool(_ALNUM_SAFE_RE.match(str(v))),
        "invalid characters in '{value}' (only alphanumeric, underscore, hyphen allowed)",
    ),
)

HOSTNAME_RULES = (
    ValidationRule("non_empty", _non_empty, "hostname cannot be empty"),
    ValidationRule(
        "max_length",
        lambda v: len(str(v)) <= MAX_HOSTNAME_LENGTH,
        f"hostname too long (max {MAX_HOSTNAME_LENGTH} characters)",
    ),
    ValidationRule("no_consecutive_dots", lambda v: ".." not in str(v),
                   "hostname contains consecutive dots: '{value}'"),
    ValidationRule("rfc1123", lambda v: bool(_HOSTNAME_RE.match(str(v))),
                   "invalid hostname format: '{value}'"),
)

EMAIL_RULES = (
    ValidationRule("non_empty", _non_empty, "email address cannot be empty"),
    ValidationRule(
        "max_length",
        lambda v: len(str(v)) <= MAX_EMAIL_LENGTH,
        f"email address too long (max {MAX_EMAIL_LENGTH} characters)",
    ),
    ValidationRule("no_consecutive_dots", lambda v: ".." not in str(v),
                   "email contains consecutive dots: '{value}'"),
    ValidationRule("format", lambda v: bool(_EMAIL_RE.match(str(v))),
                   "invalid email format: '{value}'"),
)


class Validator:
    """Validators bound to a logger and to the configurable input policy.

    Rejecting "localhost" and warning on privileged ports are business
    policy, not security invariants, so both are switchable.
    """

    def __init__(self, logger: StructuredLogger, reject_localhost: bool = True,
                 warn_privileged_ports: bool = True):
        self.log = logger
        self.reject_localhost = reject_localhost
        self.warn_privileged_ports = warn_privileged_ports

    @classmethod
    def from_config(cls, config, logger: StructuredLogger) -> "Validator":
        return cls(
            logger,
            reject_localhost=config.reject_localhost,
            warn_privileged_ports=config.warn_privileged_ports,
        )

    # ------------------------------------------------------------
    # Rule application
    # ------------------------------------------------------------

    def check(self, rules, value, field: str) -> ValidationResult:
        """Apply rules in order; the first failing rule raises."""
        for rule in rules:
            if not rule.predicate(value):
                self._fail(field, rule.reason.format(field=field, value=_preview(value)))
        self.log.debug(f"Validation passed for {field}", field=field)
        return ValidationResult(value=value, passed=True, field=field)

    def _fail(self, field: str, reason: str):
        self.log.error(
            f"Validation failed for {field}: {reason}",
            error_category="validation", field=field, reason=reason,
        )
        raise ValidationError(field, reason)

    def _check_digits_in_range(self, value, field: str, minimum: int, maximum: int,
                               what: str = "value") -> int:
        if not _non_empty(value):
            self._fail(field, f"{what} cannot be empty")
        if not _digits(value):
            self._fail(field, f"{what} must be a positive integer: '{_preview(value)}'")
        number = int(str(value))
        if number < minimum or number > maximum:
            self._fail(field, f"{what} out of range: {number} (must be {minimum}-{maximum})")
        return number

    # ------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------

    def validate_alphanumeric_safe(self, value: str, field: str = "field") -> ValidationResult:
        return self.check(ALPHANUMERIC_SAFE_RULES, value, field)

    def validate_hostname(self, value: str, field: str = "hostname") -> ValidationResult:
        rules = HOSTNAME_RULES
        if self.reject_localhost:
            rules = rules + (
                ValidationRule("not_localhost", lambda v: str(v).lower() != "localhost",
                               "localhost not allowed in automation context"),
            )
        return self.check(rules, value, field)

    def validate_port(self, value, field: str = "port") -> ValidationResult:
        port = self._check_digits_in_range(value, field, 1, 65535, what="port")
        if port < 1024 and self.warn_privileged_ports:
            self.log.warn(f"Using privileged port: {port} (requires elevated privileges)",
                          field=field, port=port)
        self.log.debug(f"Validation passed for {field}", field=field)
        return ValidationResult(value=port, passed=True, field=field)

    def validate_int_range(self, value, field: str, minimum: int, maximum: int) -> ValidationResult:
        number = self._check_digits_in_range(value, field, minimum, maximum)
        self.log.debug(f"Validation passed for {field}", field=field)
        return ValidationResult(value=number, passed=True, field=field)

    def validate_timeout(self, value, field: str = "timeout") -> ValidationResult:
        seconds = self._check_digits_in_range(value, field, 1, MAX_TIMEOUT_SECONDS, what="timeout")
        if seconds < 5:
            self.log.warn(f"Very short timeout: {seconds} seconds (may cause premature failures)",
                          field=field, timeout=seconds)
        self.log.debug(f"Validation passed for {field}", field=field)
        return ValidationResult(value=seconds, passed=True, field=field)

    def validate_email(self, value: str, field: str = "email") -> ValidationResult:
        return self.check(EMAIL_RULES, value, field)

    def validate_string_length(self, value: str, field: str, minimum: int,
                               maximum: int) -> ValidationResult:
        length = len(value or "")
        if length < minimum:
            self._fail(field, f"too short: {length} characters (minimum {minimum})")
        if length > maximum:
            self._fail(field, f"too long: {length} characters (maximum {maximum})")
        self.log.debug(f"Validation passed for {field}", field=field, length=length)
        return ValidationResult(value=value, passed=True, field=field)

    def validate_no_shell_metacharacters(self, value: str, field: str = "input") -> ValidationResult:
        found = find_shell_metacharacters(str(value))
        if found:
            self._fail(field, f"{found} detected in '{_preview(value)}'")
        self.log.debug(f"Validation passed for {field}", field=field)
        return ValidationResult(value=value, passed=True, field=field)

    def validate_agent_parameters(self, params, max_length: int = MAX_AGENT_PARAM_LENGTH) -> ValidationResult:
        """Every parameter must be metacharacter-free and at most max_length chars."""
        params = list(params)
        for i, param in enumerate(params):
            field = f"param[{i}]"
            found = find_shell_metacharacters(param)
            if found:
                self._fail(field, f"{found} detected in '{_preview(param)}'")
            if len(param) > max_length:
                self._fail(field, f"parameter too long ({len(param)} characters, max {max_length})")
        self.log.debug("Agent parameters validated", count=len(params))
        return ValidationResult(value=params, passed=True, field="params")

    def require_commands(self, *names: str) -> ValidationResult:
        """All named commands must resolve on PATH. Reports every missing one at once."""
        resolved = {}
        missing = []
        for name in names:
            path = shutil.which(name)
            if path:
                resolved[name] = path
            else:
                missing.append(name)
        if missing:
            self._fail("commands", f"required commands not found: {', '.join(missing)}")
        self.log.debug("Required commands present", commands=",".join(names))
        return ValidationResult(value=resolved, passed=True, field="commands")

    # ------------------------------------------------------------
    # Dispatch by type name (CLI)
    # ------------------------------------------------------------

    KINDS = ("alphanumeric", "hostname", "port", "int-range", "email", "length", "no-meta", "timeout")

    def validate(self, kind: str, value: str, field: str = None, minimum: int = None,
                 maximum: int = None) -> ValidationResult:
        """Validate value as the named kind. int-range and length need both bounds."""
        field = field or kind
        if kind == "alphanumeric":
            return self.validate_alphanumeric_safe(value, field)
        if kind == "hostname":
            return self.validate_hostname(value, field)
        if kind == "port":
            return self.validate_port(value, field)
        if kind == "email":
            return self.validate_email(value, field)
        if kind == "no-meta":
            return self.validate_no_shell_metacharacters(value, field)
        if kind == "timeout":
            return self.validate_timeout(value, field)
        if kind in ("int-range", "length"):
            if minimum is None or maximum is None:
                self._fail(field, f"{kind} validation requires --min and --max")
            if kind == "int-range":
                return self.validate_int_range(value, field, minimum, maximum)
            return self.validate_string_length(value, field, minimum, maximum)
        self._fail(field, f"unknown validation type: {kind}")
