"""aiguard: guarded command execution for AI agents and automation.

Usage:
    aiguard run [--mode safe] [--allow ls,cat] [--timeout 60] -- ls -la /opt/app
    aiguard validate hostname web-01.example.com
    aiguard resolve-path data/input.csv --access r
    aiguard check-deps git rsync
    aiguard agent list | usage SCRIPT | execute SCRIPT [PARAMS...]
    aiguard init-config

Diagnostics go to stderr (or --log-file); stdout carries only results.
Run 'aiguard --help' for all options.
"""

import argparse
import json
import os
import sys

# Add parent directory to path so imports work when run directly
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from guard.command_guard import CommandRequest, SecurityMode
from guard.config import VERSION, build_config, generate_sample_config
from guard.errors import ConfigError
from guard.runtime import Guard, build_guard
from guard.validation import Validator
from agent_tools.script_exec import ScriptExecutor


CONFIG_FILE_NAME = ".aiguard.toml"


# ============================================================
# Subcommands
# ============================================================

def cmd_run(guard: Guard, args) -> int:
    argv = list(args.argv)
    if argv and argv[0] == "--":
        argv = argv[1:]
    if not argv:
        guard.trap.fail("run", 2, "no command given")

    timeout = None
    if args.timeout is not None:
        timeout = guard.validator.validate_timeout(args.timeout).value

    cwd = None
    if args.cwd:
        cwd = guard.paths.resolve_directory(args.cwd)

    allow = None
    if args.allow:
        allow = frozenset(part.strip() for part in args.allow.split(",") if part.strip())

    result = guard.commands.run(CommandRequest(
        command=argv[0],
        args=tuple(argv[1:]),
        mode=SecurityMode.parse(args.mode) if args.mode else None,
        allow_list=allow,
        timeout=timeout,
        cwd=cwd,
    ))
    if result.stdout:
        sys.stdout.write(result.stdout)
        sys.stdout.flush()
    if result.stderr:
        sys.stderr.write(result.stderr)
        sys.stderr.flush()
    if result.exit_code < 0:
        # killed by signal N
        return 128 - result.exit_code
    return result.exit_code


def cmd_validate(guard: Guard, args) -> int:
    result = guard.validator.validate(
        args.type, args.value, field=args.field, minimum=args.min, maximum=args.max,
    )
    print(result.value)
    return 0


def cmd_resolve_path(guard: Guard, args) -> int:
    print(guard.paths.resolve(args.path, args.access, allowed_root=args.root))
    return 0


def cmd_check_deps(guard: Guard, args) -> int:
    result = guard.validator.require_commands(*args.commands)
    for name, path in result.value.items():
        print(f"{name}: {path}")
    return 0


def cmd_agent(guard: Guard, args) -> int:
    tool = ScriptExecutor(guard)
    if args.action == "list":
        response = tool.list_scripts()
    elif args.action == "usage":
        response = tool.script_usage(args.script)
    else:
        params = list(args.params)
        if params and params[0] == "--":
            params = params[1:]
        response = tool.execute_script(args.script, params)

    print(json.dumps(response, indent=2))
    if response.get("status") in ("success", "dry-run"):
        return 0
    return response.get("exit_code") or 1


def cmd_init_config(guard: Guard, args) -> int:
    if os.path.exists(CONFIG_FILE_NAME) and not args.force:
        print(f"{CONFIG_FILE_NAME} already exists (use --force to overwrite).", file=sys.stderr)
        return 1
    with open(CONFIG_FILE_NAME, "w", encoding="utf-8") as f:
        f.write(generate_sample_config())
    print(f"Created {CONFIG_FILE_NAME} with default settings.")
    return 0


HANDLERS = {
    "run": cmd_run,
    "validate": cmd_validate,
    "resolve-path": cmd_resolve_path,
    "check-deps": cmd_check_deps,
    "agent": cmd_agent,
    "init-config": cmd_init_config,
}


# ============================================================
# Argument parsing
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aiguard",
        description="aiguard: guarded command execution for AI agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"aiguard {VERSION}")
    parser.add_argument("--config", default=None, help="Path to config file (default: auto-detect .aiguard.toml)")
    parser.add_argument("--no-config", action="store_true", help="Ignore config files, use defaults + CLI args only")
    parser.add_argument("--log-json", action="store_true", help="Emit log events as JSON lines")
    parser.add_argument("--log-level", default=None, help="Log threshold: 10/20/30/40 or debug/info/warn/error")
    parser.add_argument("--log-file", default=None, help="Append log events to this file instead of stderr")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-d", "--dry-run", action="store_true", help="Log commands instead of running them")
    parser.add_argument("--read-only", action="store_true", help="Refuse commands that mutate system state")
    parser.add_argument("--allowed-root", default=None, help="Directory file arguments must stay under (default: cwd)")
    parser.add_argument("--scripts-dir", default=None, help="Directory holding agent scripts")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("run", help="Run one command through the guard")
    p.add_argument("--mode", default=None, choices=[m.value for m in SecurityMode],
                   help="Security mode (default: from config, else safe)")
    p.add_argument("--allow", default=None, help="Comma-separated allowed command basenames")
    p.add_argument("--timeout", default=None, help="Seconds before the command is killed")
    p.add_argument("--cwd", default=None, help="Working directory (must be under the allowed root)")
    p.add_argument("argv", nargs=argparse.REMAINDER, help="-- COMMAND [ARGS...]")

    p = sub.add_parser("validate", help="Validate one input value")
    p.add_argument("type", choices=list(Validator.KINDS))
    p.add_argument("value")
    p.add_argument("--field", default=None, help="Field name used in messages")
    p.add_argument("--min", type=int, default=None)
    p.add_argument("--max", type=int, default=None)

    p = sub.add_parser("resolve-path", help="Validate a path and print its canonical form")
    p.add_argument("path")
    p.add_argument("--access", default="r", choices=["r", "w", "x", "read", "write", "execute"])
    p.add_argument("--root", default=None, help="Allowed root for this check")

    p = sub.add_parser("check-deps", help="Fail unless every command is on PATH")
    p.add_argument("commands", nargs="+")

    p = sub.add_parser("agent", help="Agent script tool (JSON on stdout)")
    agent_sub = p.add_subparsers(dest="action", metavar="ACTION")
    agent_sub.required = True
    agent_sub.add_parser("list", help="List allowed scripts")
    ap = agent_sub.add_parser("usage", help="Show a script's --help output")
    ap.add_argument("script")
    ap = agent_sub.add_parser("execute", help="Execute an allowed script")
    ap.add_argument("script")
    ap.add_argument("params", nargs=argparse.REMAINDER)

    p = sub.add_parser("init-config", help=f"Write a sample {CONFIG_FILE_NAME}")
    p.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load configuration: DEFAULTS → config file → environment → CLI args
    try:
        config = build_config(args.config, args, use_file=not args.no_config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    guard = build_guard(config, operation=args.command)
    try:
        return guard.trap.run_main(HANDLERS[args.command], guard, args)
    finally:
        guard.close()


if __name__ == "__main__":
    sys.exit(main())
