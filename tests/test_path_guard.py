"""Tests for guard.path_guard.

Run with: python -m pytest tests/test_path_guard.py -v
Or: python tests/test_path_guard.py (standalone)
"""

import io
import os
import shutil
import stat
import sys
import tempfile

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from guard.errors import PathError
from guard.path_guard import AccessMode, PathGuard, has_parent_segment, is_contained
from guard.structured_log import DEBUG, StructuredLogger


# ============================================================
# Fixtures
# ============================================================

def make_tree():
    """root/ with data.txt, run.sh (executable), sub/; plus an outside file."""
    base = os.path.realpath(tempfile.mkdtemp(prefix="aiguard_test_"))
    root = os.path.join(base, "app")
    os.makedirs(os.path.join(root, "sub"))
    with open(os.path.join(root, "data.txt"), "w") as f:
        f.write("hello\n")
    script = os.path.join(root, "run.sh")
    with open(script, "w") as f:
        f.write("#!/bin/sh\necho hi\n")
    os.chmod(script, os.stat(script).st_mode | stat.S_IXUSR)
    with open(os.path.join(base, "secret.txt"), "w") as f:
        f.write("secret\n")
    return base, root


def make_guard(root):
    stream = io.StringIO()
    log = StructuredLogger(level=DEBUG, script="test", stream=stream)
    return PathGuard(log, allowed_root=root), stream


def expect_rejection(fn, *args, **kwargs) -> PathError:
    try:
        fn(*args, **kwargs)
    except PathError as e:
        return e
    assert False, "expected PathError"


# ============================================================
# Helpers
# ============================================================

def test_has_parent_segment():
    assert has_parent_segment("../etc")
    assert has_parent_segment("a/../b")
    assert has_parent_segment("a\\..\\b")
    assert not has_parent_segment("a/..b/c")
    assert not has_parent_segment("notes..txt")


def test_is_contained_requires_separator():
    assert is_contained("/opt/app", "/opt/app")
    assert is_contained("/opt/app/x", "/opt/app")
    assert not is_contained("/opt/application", "/opt/app")
    assert is_contained("/etc", "/")


def test_access_mode_parse():
    assert AccessMode.parse("r") is AccessMode.READ
    assert AccessMode.parse("write") is AccessMode.WRITE
    assert AccessMode.parse("X") is AccessMode.EXECUTE
    try:
        AccessMode.parse("rw")
        assert False, "expected ValueError"
    except ValueError:
        pass


# ============================================================
# Resolve
# ============================================================

def test_resolve_relative_read():
    base, root = make_tree()
    try:
        pg, stream = make_guard(root)
        assert pg.resolve("data.txt", "r") == os.path.join(root, "data.txt")
        assert "[DEBUG]" in stream.getvalue()
    finally:
        shutil.rmtree(base)


def test_resolve_absolute_read():
    base, root = make_tree()
    try:
        pg, _ = make_guard(root)
        target = os.path.join(root, "data.txt")
        assert pg.resolve(target, AccessMode.READ) == target
    finally:
        shutil.rmtree(base)


def test_traversal_rejected_before_resolution():
    pg, stream = make_guard("/opt/app")
    e = expect_rejection(pg.resolve, "/opt/app/../../etc/passwd", "r", "/opt/app")
    assert "traversal" in e.reason
    assert stream.getvalue().count("[ERROR]") == 1
    assert "error_category=path" in stream.getvalue()


def test_traversal_rejected_even_if_it_stays_inside():
    base, root = make_tree()
    try:
        pg, _ = make_guard(root)
        e = expect_rejection(pg.resolve, "sub/../data.txt", "r")
        assert "traversal" in e.reason
    finally:
        shutil.rmtree(base)


def test_absolute_path_outside_root_rejected():
    base, root = make_tree()
    try:
        pg, _ = make_guard(root)
        e = expect_rejection(pg.resolve, os.path.join(base, "secret.txt"), "r")
        assert "outside allowed root" in e.reason
    finally:
        shutil.rmtree(base)


def test_sibling_prefix_not_contained():
    base, root = make_tree()
    try:
        sibling = root + "lication"
        os.makedirs(sibling)
        with open(os.path.join(sibling, "f.txt"), "w") as f:
            f.write("x")
        pg, _ = make_guard(root)
        expect_rejection(pg.resolve, os.path.join(sibling, "f.txt"), "r")
    finally:
        shutil.rmtree(base)


def test_symlink_escape_rejected():
    base, root = make_tree()
    try:
        link = os.path.join(root, "innocent.txt")
        os.symlink(os.path.join(base, "secret.txt"), link)
        pg, _ = make_guard(root)
        e = expect_rejection(pg.resolve, "innocent.txt", "r")
        assert "outside allowed root" in e.reason
    finally:
        shutil.rmtree(base)


def test_symlink_inside_root_allowed():
    base, root = make_tree()
    try:
        link = os.path.join(root, "alias.txt")
        os.symlink(os.path.join(root, "data.txt"), link)
        pg, _ = make_guard(root)
        assert pg.resolve("alias.txt", "r") == os.path.join(root, "data.txt")
    finally:
        shutil.rmtree(base)


def test_resolve_directory():
    base, root = make_tree()
    try:
        pg, stream = make_guard(root)
        assert pg.resolve_directory("sub") == os.path.join(root, "sub")
        assert pg.resolve_directory(root) == root
        e = expect_rejection(pg.resolve_directory, "data.txt")
        assert "not a directory" in e.reason
        expect_rejection(pg.resolve_directory, base)
        expect_rejection(pg.resolve_directory, "sub/../..")
        assert stream.getvalue().count("[ERROR]") == 3
        assert "error_category=path" in stream.getvalue()
    finally:
        shutil.rmtree(base)


def test_directory_symlink_escape_rejected():
    base, root = make_tree()
    try:
        os.symlink(base, os.path.join(root, "up"))
        pg, _ = make_guard(root)
        e = expect_rejection(pg.resolve_directory, "up")
        assert "outside allowed root" in e.reason
    finally:
        shutil.rmtree(base)


def test_empty_path_rejected():
    pg, _ = make_guard(tempfile.gettempdir())
    e = expect_rejection(pg.resolve, "", "r")
    assert "empty" in e.reason


def test_directory_rejected():
    base, root = make_tree()
    try:
        pg, _ = make_guard(root)
        e = expect_rejection(pg.resolve, "sub", "r")
        assert "directory" in e.reason
    finally:
        shutil.rmtree(base)


def test_read_missing_file():
    base, root = make_tree()
    try:
        pg, _ = make_guard(root)
        e = expect_rejection(pg.resolve, "missing.txt", "r")
        assert "does not exist" in e.reason
    finally:
        shutil.rmtree(base)


def test_write_new_file_in_existing_dir():
    base, root = make_tree()
    try:
        pg, _ = make_guard(root)
        assert pg.resolve("sub/new.txt", "w") == os.path.join(root, "sub", "new.txt")
        assert not os.path.exists(os.path.join(root, "sub", "new.txt"))
    finally:
        shutil.rmtree(base)


def test_write_missing_parent():
    base, root = make_tree()
    try:
        pg, _ = make_guard(root)
        e = expect_rejection(pg.resolve, "nope/new.txt", "w")
        assert "parent directory" in e.reason
    finally:
        shutil.rmtree(base)


def test_execute_access():
    base, root = make_tree()
    try:
        pg, _ = make_guard(root)
        assert pg.resolve("run.sh", "x") == os.path.join(root, "run.sh")
        if os.geteuid() != 0:
            e = expect_rejection(pg.resolve, "data.txt", "x")
            assert "not executable" in e.reason
    finally:
        shutil.rmtree(base)


def test_per_call_root_overrides_default():
    base, root = make_tree()
    try:
        pg, _ = make_guard(os.path.join(root, "sub"))
        expect_rejection(pg.resolve, os.path.join(root, "data.txt"), "r")
        assert pg.resolve(os.path.join(root, "data.txt"), "r", allowed_root=root)
    finally:
        shutil.rmtree(base)


# ============================================================
# Runner
# ============================================================

if __name__ == "__main__":
    test_functions = [v for k, v in sorted(globals().items()) if k.startswith("test_")]
    passed = 0
    failed = 0
    for fn in test_functions:
        try:
            fn()
            passed += 1
            print(f"  PASS  {fn.__name__}")
        except Exception as e:
            failed += 1
            print(f"  FAIL  {fn.__name__}: {e}")

    print(f"\n{passed} passed, {failed} failed, {passed + failed} total")
    sys.exit(1 if failed else 0)
