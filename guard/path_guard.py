"""Path confinement for file arguments.

resolve() turns an untrusted path into an absolute, symlink-free path that is
guaranteed to sit under the allowed root and to support the requested access:

1. reject ".." segments in the literal input (before any resolution)
2. canonicalize with realpath (the target does not have to exist yet)
3. containment: canonical path == root, or starts with root + separator
4. access mode: read / write / execute

Containment is checked on the canonical path, so a symlink pointing outside
the root fails at step 3 even though the literal input looked harmless.
"""

import enum
import os
import re

from guard.errors import PathError
from guard.structured_log import StructuredLogger


_SEGMENT_SPLIT_RE = re.compile(r'[\\/]+')


class AccessMode(enum.Enum):
    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"

    @classmethod
    def parse(cls, value) -> "AccessMode":
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for mode in cls:
            if text in (mode.value, mode.value[0]):
                return mode
        raise ValueError(f"Invalid access mode: {value!r} (use r, w, or x)")


def has_parent_segment(path: str) -> bool:
    """True if any '/' or '\\' separated segment is exactly '..'."""
    return any(seg == ".." for seg in _SEGMENT_SPLIT_RE.split(path))


def is_contained(canonical: str, root: str) -> bool:
    """String-prefix containment on canonical paths."""
    if canonical == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return canonical.startswith(prefix)


class PathGuard:
    """Validates paths against one default allowed root."""

    def __init__(self, logger: StructuredLogger, allowed_root: str = None):
        self.log = logger
        self.allowed_root = os.path.realpath(allowed_root or os.getcwd())

    @classmethod
    def from_config(cls, config, logger: StructuredLogger) -> "PathGuard":
        return cls(logger, allowed_root=config.allowed_root)

    def resolve(self, path: str, access_mode="read", allowed_root: str = None) -> str:
        """Validate path and return its canonical form.

        Args:
            path: Untrusted path. Relative paths are anchored at the allowed root.
            access_mode: AccessMode or "r"/"read", "w"/"write", "x"/"execute".
            allowed_root: Root for this call. Defaults to the guard's root.

        Returns:
            Absolute canonical path under the root.

        Raises:
            PathError: on traversal, containment or access failure.
        """
        try:
            mode = AccessMode.parse(access_mode)
        except ValueError as e:
            self._fail(path, str(e))

        root, canonical = self._confine(path, allowed_root)

        # Step 4: access mode
        self._check_access(str(path), canonical, mode)

        self.log.debug(
            f"File path validation passed: {canonical} ({mode.value} access)",
            path=canonical, access=mode.value, root=root,
        )
        return canonical

    def resolve_directory(self, path: str, allowed_root: str = None) -> str:
        """Like resolve(), for an existing directory such as a working directory."""
        root, canonical = self._confine(path, allowed_root)
        if not os.path.isdir(canonical):
            self._fail(str(path), f"not a directory: '{canonical}'")
        self.log.debug(f"Directory validation passed: {canonical}", path=canonical, root=root)
        return canonical

    def _confine(self, path: str, allowed_root: str = None) -> tuple[str, str]:
        """Steps 1-3. Returns (root, canonical path)."""
        if path is None or str(path) == "":
            self._fail("", "file path cannot be empty")
        path = str(path)

        # Step 1: literal traversal check, before any resolution
        if has_parent_segment(path):
            self._fail(path, "path traversal detected")

        # Step 2: canonicalize (root too, every call)
        root = os.path.realpath(allowed_root) if allowed_root else self.allowed_root
        anchored = path if os.path.isabs(path) else os.path.join(root, path)
        try:
            canonical = os.path.realpath(anchored)
        except (OSError, ValueError) as e:
            self._fail(path, f"invalid file path ({e})")

        # Step 3: containment on the canonical form
        if not is_contained(canonical, root):
            self._fail(path, f"path resolves outside allowed root '{root}' (target: '{canonical}')")
        return root, canonical

    def _check_access(self, path: str, canonical: str, mode: AccessMode) -> None:
        if os.path.isdir(canonical):
            self._fail(path, f"path is a directory, expected a file: '{canonical}'")

        if mode is AccessMode.READ:
            if not os.path.isfile(canonical):
                self._fail(path, f"file does not exist: '{canonical}'")
            if not os.access(canonical, os.R_OK):
                self._fail(path, f"file not readable: '{canonical}'")

        elif mode is AccessMode.WRITE:
            if os.path.exists(canonical):
                if not os.path.isfile(canonical):
                    self._fail(path, f"not a regular file: '{canonical}'")
                if not os.access(canonical, os.W_OK):
                    self._fail(path, f"file not writable: '{canonical}'")
            else:
                parent = os.path.dirname(canonical)
                if not os.path.isdir(parent):
                    self._fail(path, f"parent directory does not exist: '{parent}'")
                if not os.access(parent, os.W_OK):
                    self._fail(path, f"cannot write to parent directory: '{parent}'")

        elif mode is AccessMode.EXECUTE:
            if not os.path.isfile(canonical):
                self._fail(path, f"file does not exist: '{canonical}'")
            if not os.access(canonical, os.X_OK):
                self._fail(path, f"file not executable: '{canonical}'")

    def _fail(self, path: str, reason: str):
        self.log.error(
            f"Path rejected: {reason}",
            error_category="path", path=path, reason=reason,
        )
        raise PathError(path, reason)
