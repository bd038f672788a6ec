#!/usr/bin/env python3
"""
toolkeeper - Managed CLI tool versions and dependency maintenance audits.

Usage:
    keeper tool install codex           # Install (or adopt) the latest release
    keeper tool update rg               # Move to latest, prune older versions
    keeper tool use rg:14.1.0           # Switch the active version
    keeper tool list --updates          # Show installed versions and updates
    keeper run rg --version             # Run the active version of a tool
    keeper deps --fail-on-high          # Audit Cargo dependencies
    keeper config set github-token TOKEN
"""

import argparse
import os
import sys
from pathlib import Path

from toolkeeper import __version__
from toolkeeper.audit_engine import audit_dependencies
from toolkeeper.cache import TtlCache, cache_file_path
from toolkeeper.config import (
    SECRET_KEYS,
    KeeperConfig,
    config_path,
    get_value,
    load_config,
    mask_secret,
    resolve_github_token,
    save_config,
    set_value,
    unset_value,
)
from toolkeeper.errors import ConfigCorrupt, KeeperError
from toolkeeper.lifecycle import DEFAULT_SYNC_FILE, ToolManager
from toolkeeper.listing import UPDATE_CACHE_FILE, build_tool_list
from toolkeeper.logging_config import get_logger, setup_logging
from toolkeeper.manifest import parse_manifest, resolve_manifest_path
from toolkeeper.netclient import HttpClient, ProxySettings, timeout_from_env
from toolkeeper.policy import supported_tools
from toolkeeper.report import (
    EXIT_ERROR,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_USAGE,
    audit_exit_code,
    build_audit_report,
    list_exit_code,
    render_audit_text,
    render_supported_text,
    render_tool_list_text,
    to_json,
    write_json_report,
)
from toolkeeper.runner import run_tool
from toolkeeper.scope import Scope, resolve_scope
from toolkeeper.signals import DEPS_CACHE_FILE, SignalClient
from toolkeeper.store import ArtifactStore


def print_error(err: KeeperError) -> None:
    print(f"✗ {err.message}", file=sys.stderr)
    if err.remediation:
        print(f"  {err.remediation}", file=sys.stderr)


def usage_error(message: str) -> int:
    print(f"✗ {message}", file=sys.stderr)
    return EXIT_USAGE


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    return number


def environment() -> dict[str, str]:
    """Snapshot of the process environment, taken once per command."""
    return dict(os.environ)


def load_settings(env: dict[str, str]) -> KeeperConfig:
    try:
        path = config_path(env)
    except ConfigCorrupt as e:
        get_logger().debug(f"Using default config: {e.message}")
        return KeeperConfig()
    return load_config(path)


def make_client(env: dict[str, str], cfg: KeeperConfig, explicit_token: str | None = None) -> HttpClient:
    return HttpClient(
        proxies=ProxySettings.from_env(env, cfg.run),
        github_token=resolve_github_token(explicit_token, env, cfg),
        timeout=timeout_from_env(env),
    )


def requested_scope(args: argparse.Namespace) -> Scope | None:
    if getattr(args, "system", False):
        return Scope.SYSTEM
    if getattr(args, "user", False):
        return Scope.USER
    return None


def tool_manager(args: argparse.Namespace, env: dict[str, str]) -> ToolManager:
    paths = resolve_scope(requested_scope(args), env)
    client = make_client(env, load_settings(env))
    return ToolManager(ArtifactStore(paths), client, verbose=args.verbose)


# Tool commands

def cmd_tool_install(args: argparse.Namespace) -> int:
    """Install a tool version into the resolved scope."""
    tool_manager(args, environment()).install(args.spec)
    return EXIT_OK


def cmd_tool_update(args: argparse.Namespace) -> int:
    """Update a tool, activate the new version and prune the rest."""
    result = tool_manager(args, environment()).update(args.spec)
    for version, error in result.prune_failures:
        print(f"⚠ could not remove {result.tool.name}:{version}: {error}", file=sys.stderr)
    return EXIT_OK


def cmd_tool_use(args: argparse.Namespace) -> int:
    tool_manager(args, environment()).use(args.ref)
    return EXIT_OK


def cmd_tool_uninstall(args: argparse.Namespace) -> int:
    tool_manager(args, environment()).uninstall(args.spec)
    return EXIT_OK


def cmd_tool_sync(args: argparse.Namespace) -> int:
    """Update every tool listed in a sync manifest."""
    manager = tool_manager(args, environment())
    result = manager.sync(Path(args.file))
    print(f"Synced {len(result.succeeded)} tool(s), {len(result.failures)} failed")
    return EXIT_OK if result.ok else EXIT_ERROR


def cmd_tool_list(args: argparse.Namespace) -> int:
    """List installed versions, the supported tool table, or update status."""
    if args.supported and args.updates:
        return usage_error("--supported cannot be combined with --updates")
    if (args.fail_on_updates or args.fail_on_check_errors) and not args.updates:
        return usage_error("--fail-on-updates/--fail-on-check-errors require --updates")

    if args.supported:
        views = supported_tools()
        if args.json:
            print(to_json([v.to_dict() for v in views]))
        else:
            sys.stdout.write(render_supported_text(views))
        return EXIT_OK

    env = environment()
    store = ArtifactStore(resolve_scope(requested_scope(args), env))
    client = None
    cache = None
    if args.updates:
        client = make_client(env, load_settings(env))
        cache = TtlCache.load(cache_file_path(env, UPDATE_CACHE_FILE))
    report = build_tool_list(store, check_updates=args.updates, client=client, cache=cache, jobs=args.jobs)

    if args.json:
        print(to_json(report.to_dict()))
    else:
        sys.stdout.write(render_tool_list_text(report))
    return list_exit_code(report, args.fail_on_updates, args.fail_on_check_errors)


# Run

def cmd_run(args: argparse.Namespace) -> int:
    """Run the active version of a tool with normalized proxy variables."""
    env = environment()
    cfg = load_settings(env)
    return run_tool(args.tool, args.args, env, cfg.run)


# Dependency audit

def cmd_deps(args: argparse.Namespace) -> int:
    """Audit Cargo dependencies for maintenance risk."""
    env = environment()
    cfg = load_settings(env)
    manifest_path = resolve_manifest_path(Path(args.manifest_path) if args.manifest_path else None)
    specs = parse_manifest(
        manifest_path,
        include_dev=args.include_dev,
        include_build=args.include_build,
        include_optional=args.include_optional,
    )
    logger = get_logger()
    logger.debug(f"Auditing {len(specs)} dependencies from {manifest_path}")

    client = make_client(env, cfg, args.github_token)
    if not client.github_token:
        logger.debug("No GitHub token; GitHub lookups use the anonymous quota")
    signals = SignalClient(client, TtlCache.load(cache_file_path(env, DEPS_CACHE_FILE)))
    records = audit_dependencies(specs, signals, jobs=args.jobs)

    sys.stdout.write(render_audit_text(manifest_path, records))
    if args.json:
        json_path = Path(args.json)
        try:
            write_json_report(json_path, build_audit_report(manifest_path, records))
        except OSError as e:
            raise KeeperError(f"cannot write JSON report {json_path}: {e}") from e
        logger.info(f"Wrote JSON report to {json_path}")
    return audit_exit_code(records, args.fail_on_high, args.fail_on_check_errors)


# Config

def cmd_config_path(args: argparse.Namespace) -> int:
    print(config_path(environment()))
    return EXIT_OK


def cmd_config_get(args: argparse.Namespace) -> int:
    cfg = load_config(config_path(environment()))
    value = get_value(cfg, args.key)
    if value is None:
        print(f"{args.key} is not set", file=sys.stderr)
        return EXIT_ERROR
    if args.key in SECRET_KEYS and not args.raw:
        value = mask_secret(value)
    print(value)
    return EXIT_OK


def cmd_config_set(args: argparse.Namespace) -> int:
    path = config_path(environment())
    save_config(set_value(load_config(path), args.key, args.value), path)
    get_logger().info(f"Set {args.key} in {path}")
    return EXIT_OK


def cmd_config_unset(args: argparse.Namespace) -> int:
    path = config_path(environment())
    save_config(unset_value(load_config(path), args.key), path)
    get_logger().info(f"Unset {args.key} in {path}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keeper",
        description="Managed CLI tool versions and dependency maintenance audits",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only warnings and errors")
    parser.add_argument("--log-file", help="Also write DEBUG logs to this file")
    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    # tool
    tool = commands.add_parser("tool", help="Install and manage tool versions")
    scope = tool.add_mutually_exclusive_group()
    scope.add_argument("--user", action="store_true", help="Use the per-user scope")
    scope.add_argument("--system", action="store_true", help="Use the system-wide scope")
    tool_cmds = tool.add_subparsers(dest="tool_command", required=True, metavar="ACTION")

    p = tool_cmds.add_parser("install", help="Install a tool (NAME[:VERSION])")
    p.add_argument("spec")
    p.set_defaults(func=cmd_tool_install)

    p = tool_cmds.add_parser("update", help="Update a tool and prune older versions")
    p.add_argument("spec")
    p.set_defaults(func=cmd_tool_update)

    p = tool_cmds.add_parser("use", help="Activate an installed version (NAME:VERSION)")
    p.add_argument("ref")
    p.set_defaults(func=cmd_tool_use)

    p = tool_cmds.add_parser("uninstall", help="Remove one version, or all when none given")
    p.add_argument("spec")
    p.set_defaults(func=cmd_tool_uninstall)

    p = tool_cmds.add_parser("sync", help="Update every tool listed in a YAML manifest")
    p.add_argument("--file", default=DEFAULT_SYNC_FILE, help=f"Sync manifest (default: {DEFAULT_SYNC_FILE})")
    p.set_defaults(func=cmd_tool_sync)

    p = tool_cmds.add_parser("list", help="List installed tool versions")
    p.add_argument("--supported", action="store_true", help="Show the supported tool table")
    p.add_argument("--updates", action="store_true", help="Check upstream for newer releases")
    p.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    p.add_argument("--fail-on-updates", action="store_true", help="Exit 20 when updates are available")
    p.add_argument("--fail-on-check-errors", action="store_true", help="Exit 21 when an update check failed")
    p.add_argument("--jobs", type=positive_int, help="Parallel update checks")
    p.set_defaults(func=cmd_tool_list)

    # run
    p = commands.add_parser("run", help="Run the active version of a tool")
    p.add_argument("tool")
    p.add_argument("args", nargs=argparse.REMAINDER)
    p.set_defaults(func=cmd_run)

    # deps
    p = commands.add_parser("deps", help="Audit Cargo dependencies for maintenance risk")
    p.add_argument("--manifest-path", help="Cargo.toml or its directory (default: ./Cargo.toml)")
    p.add_argument("--github-token", help="GitHub token (default: GITHUB_TOKEN, GH_TOKEN, config)")
    p.add_argument("--jobs", type=positive_int, help="Parallel registry lookups")
    p.add_argument("--include-dev", action="store_true", help="Include dev-dependencies")
    p.add_argument("--include-build", action="store_true", help="Include build-dependencies")
    p.add_argument("--include-optional", action="store_true", help="Include optional dependencies")
    p.add_argument("--json", metavar="PATH", help="Also write a JSON report to PATH")
    p.add_argument("--fail-on-high", action="store_true", help="Exit 20 when a High risk dependency exists")
    p.add_argument("--fail-on-check-errors", action="store_true", help="Exit 21 when a lookup failed")
    p.set_defaults(func=cmd_deps)

    # config
    config = commands.add_parser("config", help="Read and write persisted settings")
    config_cmds = config.add_subparsers(dest="config_command", required=True, metavar="ACTION")

    p = config_cmds.add_parser("path", help="Print the config file path")
    p.set_defaults(func=cmd_config_path)

    p = config_cmds.add_parser("get", help="Print a config value")
    p.add_argument("key")
    p.add_argument("--raw", action="store_true", help="Do not mask secrets")
    p.set_defaults(func=cmd_config_get)

    p = config_cmds.add_parser("set", help="Set a config value")
    p.add_argument("key")
    p.add_argument("value")
    p.set_defaults(func=cmd_config_set)

    p = config_cmds.add_parser("unset", help="Remove a config value")
    p.add_argument("key")
    p.set_defaults(func=cmd_config_unset)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for keeper."""
    args = build_parser().parse_args(argv)
    setup_logging(log_file=args.log_file, verbose=args.verbose, quiet=args.quiet)
    try:
        return args.func(args)
    except KeeperError as e:
        print_error(e)
        return EXIT_ERROR
    except OSError as e:
        print(f"✗ {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(EXIT_INTERRUPTED)
