"""
apiguard command line
=====================
Operator and gate surface over the security guard.

    apiguard check 203.0.113.7 --endpoint /v1/ingest      # ALLOWED / RATE_LIMITED / BLOCKED
    apiguard record 203.0.113.7 --endpoint /v1/ingest --status-code 200
    apiguard block 203.0.113.7 --ttl 60 --reason "manual review"
    apiguard analyze                                       # sweep every active IP
    apiguard monitor --connections 812

Exit status: 0 success/allowed, 1 denied or operation failed, 2 usage,
validation or configuration error.
"""

import argparse
import asyncio
import json
import sys
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from . import __version__
from .config import GuardConfig
from .exceptions import ConfigurationError, StoreUnavailableError, ValidationError
from .guard import SecurityGuard
from .logging_config import setup_logging
from .models import ListType

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


class GuardAction(str, Enum):
    CHECK = "check"
    RECORD = "record"
    STATS = "stats"
    RESET = "reset"
    ANALYZE = "analyze"
    BLOCK = "block"
    UNBLOCK = "unblock"
    WHITELIST = "whitelist"
    LIST = "list"
    MONITOR = "monitor"


# Actions that cannot run without a target IP
IP_REQUIRED = {
    GuardAction.CHECK,
    GuardAction.RECORD,
    GuardAction.RESET,
    GuardAction.BLOCK,
    GuardAction.UNBLOCK,
    GuardAction.WHITELIST,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="apiguard",
        description="Rate limiting, abuse detection and IP access control",
    )
    parser.add_argument("action", choices=[a.value for a in GuardAction], help="Operation to run")
    parser.add_argument("ip", nargs="?", help="Client IP address")
    parser.add_argument("--endpoint", help="Request path")
    parser.add_argument("--api-key", help="API key presented by the client")
    parser.add_argument("--reason", help="Reason stored with block/whitelist entries")
    parser.add_argument("--ttl", type=int, help="Entry lifetime in minutes (omit or 0 for permanent)")
    parser.add_argument("--status-code", type=int, help="Response status code for record")
    parser.add_argument("--user-agent", help="Client user agent for record")
    parser.add_argument(
        "--list-type",
        choices=[t.value for t in ListType],
        help="Restrict list output to one list type",
    )
    parser.add_argument("--connections", type=int, help="Current concurrent connections for monitor")
    parser.add_argument("--json", action="store_true", help="Print machine readable JSON")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    parser.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a configuration variable, e.g. RATE_LIMIT_BURST_SIZE=0",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def parse_overrides(pairs: Sequence[str]) -> Dict[str, str]:
    """Turn ``KEY=VALUE`` strings into a dict. Raises ConfigurationError when malformed."""
    overrides: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"Override must look like KEY=VALUE, got {pair!r}", value=pair)
        overrides[key.strip()] = value.strip()
    return overrides


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------

async def _check(guard: SecurityGuard, args: argparse.Namespace) -> int:
    decision = await guard.check(args.ip, endpoint=args.endpoint, api_key=args.api_key)
    print(decision.decision.value)
    if args.json:
        _print_json(decision.to_dict())
    return EXIT_OK if decision.allowed else EXIT_FAILED


async def _record(guard: SecurityGuard, args: argparse.Namespace) -> int:
    stored = await guard.record(
        args.ip,
        endpoint=args.endpoint,
        api_key=args.api_key,
        status_code=args.status_code,
        user_agent=args.user_agent,
    )
    print("RECORDED" if stored else "RECORDED (degraded: store unavailable)")
    return EXIT_OK


async def _stats(guard: SecurityGuard, args: argparse.Namespace) -> int:
    _print_json(await guard.stats(args.ip))
    return EXIT_OK


async def _reset(guard: SecurityGuard, args: argparse.Namespace) -> int:
    deleted = await guard.reset(args.ip, endpoint=args.endpoint)
    print(f"RESET {args.ip} ({deleted} events)")
    return EXIT_OK


async def _analyze(guard: SecurityGuard, args: argparse.Namespace) -> int:
    reports = await guard.analyze(args.ip)
    if args.json:
        _print_json([r.to_dict() for r in reports])
        return EXIT_OK
    for report in reports:
        if report.skipped:
            print(f"SKIPPED {report.ip} ({report.skipped})")
            continue
        finding = next((f for f in report.findings if f.detected), None)
        if finding is None:
            print(f"CLEAN {report.ip}" + (" (degraded)" if report.degraded else ""))
            continue
        line = f"ABUSE_DETECTED {report.ip} {finding.reason.value}: {finding.message}"
        if report.response and report.response.blocked:
            line += f" -> blocked {report.response.duration_minutes} min"
        print(line)
    return EXIT_OK


async def _block(guard: SecurityGuard, args: argparse.Namespace) -> int:
    entry = await guard.block(args.ip, args.ttl, args.reason)
    until = entry.expires_at.isoformat() if entry.expires_at else "permanent"
    print(f"BLOCKED {entry.ip_address} until {until}")
    return EXIT_OK


async def _unblock(guard: SecurityGuard, args: argparse.Namespace) -> int:
    removed = await guard.unblock(args.ip)
    print(f"UNBLOCKED {args.ip} ({removed} entries)")
    return EXIT_OK


async def _whitelist(guard: SecurityGuard, args: argparse.Namespace) -> int:
    entry = await guard.whitelist(args.ip, args.ttl, args.reason)
    until = entry.expires_at.isoformat() if entry.expires_at else "permanent"
    print(f"WHITELISTED {entry.ip_address} until {until}")
    return EXIT_OK


async def _list(guard: SecurityGuard, args: argparse.Namespace) -> int:
    entries = await guard.list_entries(ListType(args.list_type) if args.list_type else None)
    if args.json:
        _print_json([e.to_dict() for e in entries])
        return EXIT_OK
    for entry in entries:
        until = entry.expires_at.isoformat() if entry.expires_at else "permanent"
        print(f"{entry.ip_address}\t{entry.list_type.value}\t{until}\t{entry.reason or ''}")
    return EXIT_OK


async def _monitor(guard: SecurityGuard, args: argparse.Namespace) -> int:
    report = await guard.monitor(args.connections)
    if args.json:
        _print_json(report.to_dict())
    elif report.skipped:
        print(f"SKIPPED ({report.skipped})")
    else:
        blocked = [r.ip for r in report.responses if r.blocked]
        status = "ATTACK_DETECTED" if report.detected else "OK"
        print(f"{status} blocked={','.join(blocked) or '-'}" + (" (degraded)" if report.degraded else ""))
    return EXIT_OK


Handler = Callable[[SecurityGuard, argparse.Namespace], Awaitable[int]]

HANDLERS: Dict[GuardAction, Handler] = {
    GuardAction.CHECK: _check,
    GuardAction.RECORD: _record,
    GuardAction.STATS: _stats,
    GuardAction.RESET: _reset,
    GuardAction.ANALYZE: _analyze,
    GuardAction.BLOCK: _block,
    GuardAction.UNBLOCK: _unblock,
    GuardAction.WHITELIST: _whitelist,
    GuardAction.LIST: _list,
    GuardAction.MONITOR: _monitor,
}


async def run_action(
    guard: SecurityGuard,
    action: GuardAction,
    args: argparse.Namespace,
) -> int:
    """Dispatch one action, mapping errors onto exit codes."""
    try:
        return await HANDLERS[action](guard, args)
    except ValidationError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return EXIT_USAGE
    except StoreUnavailableError as e:
        logger.error("action_failed", action=action.value, error=str(e))
        print(f"ERROR: store unavailable: {e.message}", file=sys.stderr)
        return EXIT_FAILED


async def _run(config: GuardConfig, action: GuardAction, args: argparse.Namespace) -> int:
    guard = SecurityGuard.from_config(config)
    try:
        try:
            await guard.create_schema()
        except StoreUnavailableError as e:
            logger.warning("schema_setup_failed", error=str(e))
        return await run_action(guard, action, args)
    finally:
        await guard.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    action = GuardAction(args.action)

    if action in IP_REQUIRED and not args.ip:
        print(f"ERROR: '{action.value}' requires an IP address", file=sys.stderr)
        return EXIT_USAGE

    try:
        config = GuardConfig.from_env(overrides=parse_overrides(args.set))
    except ConfigurationError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return EXIT_USAGE

    setup_logging(config.service_name, level=args.log_level)
    return asyncio.run(_run(config, action, args))


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
