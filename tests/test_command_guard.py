"""Tests for guard.command_guard.

Run with: python -m pytest tests/test_command_guard.py -v
Or: python tests/test_command_guard.py (standalone)
"""

import io
import os
import shutil
import sys
import tempfile
import time

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from guard.command_guard import (
    MUTATOR_COMMANDS,
    SAFE_COMMANDS,
    TIMEOUT_EXIT_CODE,
    CommandGuard,
    CommandRequest,
    ExecStatus,
    SecurityMode,
    find_catastrophic_pattern,
)
from guard.errors import CommandTimeout, ExecutionFailure, GuardError
from guard.error_trap import ErrorTrap
from guard.structured_log import DEBUG, INFO, StructuredLogger


# ============================================================
# Fixtures
# ============================================================

def make_guard(level=INFO, **kwargs):
    stream = io.StringIO()
    log = StructuredLogger(level=level, script="test", stream=stream)
    return CommandGuard(log, **kwargs), stream


def event_lines(stream):
    return [line for line in stream.getvalue().splitlines() if line.strip()]


def expect_block(guard, request, reason=None) -> GuardError:
    try:
        guard.run(request)
    except GuardError as e:
        if reason:
            assert e.reason == reason, e.reason
        return e
    assert False, "expected GuardError"


def req(command, *args, **kwargs):
    return CommandRequest(command=command, args=tuple(args), **kwargs)


# ============================================================
# Security modes
# ============================================================

def test_security_mode_parse():
    assert SecurityMode.parse("safe") is SecurityMode.SAFE
    assert SecurityMode.parse("EXPLICIT_ALLOW") is SecurityMode.EXPLICIT_ALLOW
    assert SecurityMode.parse(SecurityMode.PERMISSIVE) is SecurityMode.PERMISSIVE
    try:
        SecurityMode.parse("yolo")
        assert False, "expected ValueError"
    except ValueError:
        pass


def test_tables_are_disjoint():
    assert not (SAFE_COMMANDS & MUTATOR_COMMANDS)


def test_safe_mode_runs_inspection_command():
    guard, stream = make_guard()
    result = guard.run(req("echo", "hello"))
    assert result.ok
    assert result.status is ExecStatus.SUCCESS
    assert result.stdout.strip() == "hello"
    assert result.mode is SecurityMode.SAFE


def test_safe_rejects_mutator_restricted_allows_it_in_dry_run():
    guard, _ = make_guard()
    expect_block(guard, req("systemctl", "restart", "nginx", dry_run=True), GuardError.NOT_ALLOWED)
    result = guard.run(req("systemctl", "restart", "nginx",
                           mode=SecurityMode.RESTRICTED, dry_run=True))
    assert result.status is ExecStatus.DRY_RUN


def test_safe_rejects_unknown_command():
    guard, _ = make_guard()
    expect_block(guard, req("python3", "-c", "print(1)"), GuardError.NOT_ALLOWED)


def test_restricted_rejects_mutator():
    guard, _ = make_guard(mode=SecurityMode.RESTRICTED)
    expect_block(guard, req("systemctl", "restart", "nginx"), GuardError.NOT_ALLOWED)
    expect_block(guard, req("/sbin/mkfs.ext4", "disk.img"), GuardError.NOT_ALLOWED)


def test_restricted_allows_non_mutator():
    guard, _ = make_guard(mode=SecurityMode.RESTRICTED)
    assert guard.run(req("sh", "-c", "exit 0", dry_run=True)).ok


def test_permissive_allows_mutator_but_not_catastrophe():
    guard, _ = make_guard(mode=SecurityMode.PERMISSIVE)
    assert guard.run(req("rm", "-f", "build/old.log", dry_run=True)).ok
    expect_block(guard, req("rm", "-rf", "/", dry_run=True), GuardError.DANGEROUS_PATTERN)


def test_explicit_allow_requires_listing():
    guard, _ = make_guard(mode=SecurityMode.EXPLICIT_ALLOW)
    expect_block(guard, req("echo", "hi"), GuardError.NOT_ALLOWED)
    expect_block(guard, req("echo", "hi", allow_list=frozenset({"cat"})), GuardError.NOT_ALLOWED)
    result = guard.run(req("echo", "hi", allow_list=frozenset({"echo"})))
    assert result.stdout.strip() == "hi"


def test_allow_list_narrows_other_modes():
    guard, _ = make_guard(mode=SecurityMode.PERMISSIVE)
    expect_block(guard, req("echo", "hi", allow_list=frozenset({"cat"})), GuardError.NOT_ALLOWED)


def test_allow_list_cannot_widen_safe_mode():
    guard, _ = make_guard()
    expect_block(guard, req("systemctl", "status", allow_list=frozenset({"systemctl"})),
                 GuardError.NOT_ALLOWED)


def test_read_only_blocks_mutators_in_every_mode():
    guard, _ = make_guard(read_only=True)
    for mode in SecurityMode:
        expect_block(guard, req("mv", "a", "b", mode=mode, allow_list=frozenset({"mv"}),
                                dry_run=True), GuardError.NOT_ALLOWED)


# ============================================================
# Catastrophic patterns
# ============================================================

def test_rm_rf_root_blocked_in_safe_and_explicit_allow():
    guard, _ = make_guard()
    expect_block(guard, req("rm", "-rf", "/"))
    e = expect_block(guard, req("rm", "-rf", "/", mode=SecurityMode.EXPLICIT_ALLOW,
                                allow_list=frozenset({"rm"})))
    assert e.reason == GuardError.DANGEROUS_PATTERN


def test_catastrophic_pattern_table():
    assert find_catastrophic_pattern("rm", ["-rf", "/"])
    assert find_catastrophic_pattern("rm", ["-r", "-f", "/etc"])
    assert find_catastrophic_pattern("rm", ["--recursive", "--force", "/*"])
    assert find_catastrophic_pattern("rm", ["-fR", "~"])
    assert find_catastrophic_pattern("rm", ["--no-preserve-root", "-r", "x"])
    assert find_catastrophic_pattern("dd", ["if=/dev/zero", "of=/dev/sda"])
    assert find_catastrophic_pattern("mkfs.ext4", ["/dev/sdb1"])
    assert find_catastrophic_pattern("chmod", ["777", "/srv/data"])
    assert find_catastrophic_pattern("chmod", ["-R", "o+w", "/srv"])
    assert find_catastrophic_pattern("chmod", ["a+rwx", "file"])
    assert find_catastrophic_pattern("chmod", ["2", "/etc/passwd"])
    assert find_catastrophic_pattern("chmod", ["22", "/srv/data"])


def test_catastrophic_targets_are_normalized():
    assert find_catastrophic_pattern("rm", ["-rf", "/usr/../etc"])
    assert find_catastrophic_pattern("rm", ["-rf", "//etc/"])
    assert find_catastrophic_pattern("rm", ["-rf", "/opt/app/../../*"])
    assert find_catastrophic_pattern("rm", ["-rf", "etc"], cwd="/")
    assert find_catastrophic_pattern("rm", ["-rf", "../.."], cwd="/opt/app")
    assert find_catastrophic_pattern("rm", ["-rf", "build"], cwd="/opt/app") is None
    assert find_catastrophic_pattern("dd", ["if=/dev/zero", "of=//dev/sda"])
    assert find_catastrophic_pattern("dd", ["if=/dev/zero", "of=/tmp/../dev/sda"])
    assert find_catastrophic_pattern("dd", ["if=/dev/zero", "of=sda"], cwd="/dev")
    assert find_catastrophic_pattern("mkfs.ext4", ["/mnt/../dev/sdb1"])


def test_normalized_rm_target_blocked_in_permissive_mode():
    guard, _ = make_guard(mode=SecurityMode.PERMISSIVE)
    expect_block(guard, req("rm", "-rf", "/usr/../etc"), GuardError.DANGEROUS_PATTERN)
    expect_block(guard, req("rm", "-rf", "..", cwd="/usr"), GuardError.DANGEROUS_PATTERN)


def test_non_catastrophic_invocations():
    assert find_catastrophic_pattern("rm", ["-rf", "/opt/app/build"]) is None
    assert find_catastrophic_pattern("rm", ["-r", "/"]) is None
    assert find_catastrophic_pattern("dd", ["if=/dev/zero", "of=disk.img"]) is None
    assert find_catastrophic_pattern("mkfs.ext4", ["disk.img"]) is None
    assert find_catastrophic_pattern("chmod", ["755", "run.sh"]) is None
    assert find_catastrophic_pattern("chmod", ["u+w", "notes.txt"]) is None
    assert find_catastrophic_pattern("chmod", ["4", "notes.txt"]) is None


# ============================================================
# Metacharacters and sudo
# ============================================================

def test_metacharacter_in_argument_blocked():
    guard, _ = make_guard()
    e = expect_block(guard, req("cat", "file.txt;", "rm"), GuardError.METACHARACTER_DETECTED)
    assert "';'" in e.detail


def test_backslash_in_argument_blocked():
    guard, _ = make_guard()
    e = expect_block(guard, req("echo", "a\\nb"), GuardError.METACHARACTER_DETECTED)
    assert "'\\'" in e.detail


def test_substitution_in_argument_blocked():
    guard, _ = make_guard()
    e = expect_block(guard, req("echo", "$(id)"), GuardError.METACHARACTER_DETECTED)
    assert "substitution" in e.detail


def test_sudo_is_unwrapped_and_checked():
    guard, stream = make_guard()
    expect_block(guard, req("sudo", "systemctl", "restart", "x"), GuardError.NOT_ALLOWED)
    result = guard.run(req("sudo", "echo", "hi"))
    assert result.argv == ["echo", "hi"]
    assert result.stdout.strip() == "hi"
    assert "sudo stripped" in stream.getvalue()


def test_sudo_with_options_rejected():
    guard, _ = make_guard()
    expect_block(guard, req("sudo", "-u", "root", "echo", "hi"), GuardError.NOT_ALLOWED)


def test_rejection_logs_exactly_one_event():
    guard, stream = make_guard(level=DEBUG)
    expect_block(guard, req("rm", "-rf", "/"))
    lines = event_lines(stream)
    assert len(lines) == 1
    assert "[ERROR]" in lines[0]
    assert "decision=rejected" in lines[0]
    assert "error_category=guard" in lines[0]


# ============================================================
# Dry run
# ============================================================

def test_dry_run_is_idempotent_and_spawns_nothing():
    tmp = tempfile.mkdtemp(prefix="aiguard_test_")
    try:
        marker = os.path.join(tmp, "marker")
        guard, stream = make_guard(mode=SecurityMode.PERMISSIVE)
        for _ in range(3):
            result = guard.run(req("touch", marker, dry_run=True))
            assert result.status is ExecStatus.DRY_RUN
            assert result.exit_code == 0
        assert not os.path.exists(marker)
        lines = event_lines(stream)
        assert len(lines) == 3
        assert all("DRY RUN:" in line for line in lines)
    finally:
        shutil.rmtree(tmp)


def test_guard_level_dry_run():
    guard, _ = make_guard(dry_run=True)
    assert guard.run(req("ls")).status is ExecStatus.DRY_RUN


def test_dry_run_still_runs_checks():
    guard, _ = make_guard()
    expect_block(guard, req("rm", "-rf", "/", dry_run=True), GuardError.DANGEROUS_PATTERN)


# ============================================================
# Execution
# ============================================================

def test_nonzero_exit_is_data():
    tmp = tempfile.mkdtemp(prefix="aiguard_test_")
    script = os.path.join(tmp, "fail.sh")
    with open(script, "w") as f:
        f.write("echo oops >&2\nexit 3\n")
    guard, stream = make_guard(mode=SecurityMode.PERMISSIVE)
    try:
        result = guard.run(req("sh", script))
    finally:
        shutil.rmtree(tmp)
    assert result.status is ExecStatus.FAILED
    assert result.exit_code == 3
    assert result.stderr.strip() == "oops"
    assert not result.ok
    assert "error_category=execution" in stream.getvalue()
    try:
        result.check()
        assert False, "expected ExecutionFailure"
    except ExecutionFailure as e:
        assert e.exit_code == 3


def test_missing_executable_returns_127():
    guard, _ = make_guard(mode=SecurityMode.PERMISSIVE)
    result = guard.run(req("definitely-not-a-command-xyz"))
    assert result.exit_code == 127
    assert result.status is ExecStatus.FAILED


def test_timeout_kills_child():
    guard, stream = make_guard(mode=SecurityMode.PERMISSIVE)
    result = guard.run(req("sleep", "30", timeout=0.5))
    assert result.status is ExecStatus.TIMEOUT
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.duration_ms < 10000
    assert "error_category=timeout" in stream.getvalue()
    try:
        result.check()
        assert False, "expected CommandTimeout"
    except CommandTimeout as e:
        assert e.exit_code == 124


BACKGROUND_SCRIPT = """(sleep 1.5; touch "$1") &
sleep 30
"""


def write_background_script(directory):
    """Script that leaves a background job behind, then blocks."""
    path = os.path.join(directory, "spawner.sh")
    with open(path, "w") as f:
        f.write(BACKGROUND_SCRIPT)
    return path


def test_timeout_kills_background_descendants():
    guard, _ = make_guard(mode=SecurityMode.PERMISSIVE)
    tmp = tempfile.mkdtemp(prefix="aiguard_test_")
    try:
        script = write_background_script(tmp)
        marker = os.path.join(tmp, "alive")
        result = guard.run(req("sh", script, marker, timeout=0.5))
        assert result.status is ExecStatus.TIMEOUT
        time.sleep(2.5)
        assert not os.path.exists(marker)
    finally:
        shutil.rmtree(tmp)


def test_output_truncated():
    guard, _ = make_guard(mode=SecurityMode.PERMISSIVE, max_output_size=100)
    result = guard.run(req("sh", "-c", "printf '%0500d' 0"))
    assert result.truncated
    assert result.stdout.startswith("0" * 100)
    assert "[...truncated at 100 bytes]" in result.stdout


def test_run_logs_exactly_one_event():
    guard, stream = make_guard()
    guard.run(req("echo", "one"))
    lines = event_lines(stream)
    assert len(lines) == 1
    assert "RUN: echo one" in lines[0]
    assert "outcome=success" in lines[0]
    assert "mode=safe" in lines[0]


def test_child_inherits_trace_ids():
    guard, _ = make_guard(mode=SecurityMode.PERMISSIVE)
    result = guard.run(req("env"))
    assert f"TRACE_ID={guard.log.trace.trace_id}" in result.stdout.splitlines()


def test_cwd_and_env():
    tmp = os.path.realpath(tempfile.mkdtemp(prefix="aiguard_test_"))
    try:
        guard, _ = make_guard()
        assert guard.run(req("pwd", cwd=tmp)).stdout.strip() == tmp
        guard, _ = make_guard(mode=SecurityMode.PERMISSIVE)
        result = guard.run(req("env", env={"APP_ENV": "staging"}))
        assert "APP_ENV=staging" in result.stdout.splitlines()
    finally:
        shutil.rmtree(tmp)


def test_execute_convenience():
    guard, _ = make_guard()
    result = guard.execute("echo", "a", "b", mode="explicit-allow", allow=["echo"])
    assert result.stdout.strip() == "a b"
    assert result.mode is SecurityMode.EXPLICIT_ALLOW


def test_child_untracked_after_run():
    guard, _ = make_guard()
    trap = ErrorTrap(guard.log)
    guard.trap = trap
    guard.run(req("echo", "x"))
    assert trap._children == []


def test_result_to_dict():
    guard, _ = make_guard()
    d = guard.run(req("echo", "x", dry_run=True)).to_dict()
    assert d["status"] == "dry-run"
    assert d["mode"] == "safe"
    assert d["argv"] == ["echo", "x"]


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
