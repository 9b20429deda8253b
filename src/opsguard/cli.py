"""
Command-line interface for OpsGuard.

Operators use it to inspect the policy table, check how a host resolves,
look at cooldown windows and the audit trail, and run a one-off guarded
remediation.
"""
import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, List, Optional

from dateutil import parser as date_parser

from . import __version__
from .alerting.notifiers import ConsoleNotifier, LoggingNotifier, WebhookNotifier
from .config import OpsGuardConfig
from .exceptions import IncidentClosedError, OpsGuardError, PolicyDenied
from .logging_config import configure_cli_logging, setup_logging
from .models import ActionKind, HostAccessMap, Outcome, PlaybookDescriptor
from .remediation.access import AccessResolver
from .remediation.backends import CommandBackend, HttpHealthProbe
from .remediation.cooldown import CooldownTracker
from .remediation.executor import FunctionProbe
from .remediation.orchestrator import Orchestrator, RemediationRequest
from .storage.state_store import SQLiteStateStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_DENIED = 2


def _setup_logging(args: argparse.Namespace, config: Optional[OpsGuardConfig]) -> None:
    """Configure logging from flags, falling back to the configured level."""
    if args.debug or args.verbose or args.quiet or config is None:
        configure_cli_logging(verbose=args.debug or args.verbose, quiet=args.quiet)
        return
    setup_logging(
        level=config.log_level,
        log_file=config.log_file,
        use_json=config.json_logs,
        include_timestamp=False,
    )


def _load_config(args: argparse.Namespace) -> OpsGuardConfig:
    config = OpsGuardConfig.load(args.config_file)
    if getattr(args, "state_db", None):
        config.state_db = args.state_db
    if getattr(args, "access_map", None):
        config.access_map_file = args.access_map
    config.validate()
    return config


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_since(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = date_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def handle_version(args: argparse.Namespace, config: OpsGuardConfig) -> int:
    """Handle the version subcommand."""
    print(f"OpsGuard version {__version__}")
    print("Remediation Orchestration Core")
    if args.verbose:
        print(f"\nPython: {sys.version}")
        print(f"Max tier: {config.max_tier}")
    return EXIT_OK


def handle_config(args: argparse.Namespace, config: OpsGuardConfig) -> int:
    """Handle the config subcommand. Loading already validated the config."""
    if args.action == "validate":
        print("✓ Configuration is valid")
        return EXIT_OK

    _print_json({
        "max_tier": config.max_tier,
        "dry_run": config.dry_run,
        "executor_workers": config.executor_workers,
        "access_map_file": config.access_map_file,
        "state_db": config.state_db,
        "redact_env_prefix": config.redact_env_prefix,
        "webhook_url": config.webhook_url,
        "log_level": config.log_level,
        "log_file": config.log_file,
        "json_logs": config.json_logs,
        "policy_overrides": config.policy_overrides,
    })
    return EXIT_OK


def handle_policy(args: argparse.Namespace, config: OpsGuardConfig) -> int:
    """Show the effective policy table."""
    table = config.policies()

    if args.json:
        _print_json(table.to_dict())
        return EXIT_OK

    print(f"{'ACTION':<14}{'MIN TIER':<10}{'WINDOW':<12}{'MAX':<6}{'WRITE':<7}{'VERIFY':<8}")
    for policy in table:
        window = str(policy.window) if policy.window else "-"
        max_occ = str(policy.max_occurrences) if policy.max_occurrences else "-"
        print(
            f"{policy.action_kind.value:<14}{policy.min_tier:<10}{window:<12}"
            f"{max_occ:<6}{'yes' if policy.requires_write else 'no':<7}"
            f"{policy.verify_timeout:<8g}"
        )
    return EXIT_OK


def handle_resolve(args: argparse.Namespace, config: OpsGuardConfig) -> int:
    """Resolve a host and, optionally, check an action kind against it."""
    if not config.access_map_file:
        print("ERROR: no access map configured (use --access-map or OPSGUARD_ACCESS_MAP)")
        return EXIT_ERROR

    resolver = AccessResolver(HostAccessMap.from_file(config.access_map_file))
    try:
        if args.action:
            policy = config.policies().get(ActionKind(args.action))
            access = resolver.authorize(args.host, policy)
        else:
            access = resolver.resolve(args.host)
    except PolicyDenied as e:
        print(f"DENIED ({e.policy}): {e.reason}")
        return EXIT_DENIED

    result = {
        "host_id": access.host_id,
        "target": access.target,
        "method": access.method.value,
        "prefix": access.prefix,
        "executable": access.executable,
    }
    if args.action:
        result["action"] = args.action
        result["authorized"] = True
    _print_json(result)
    return EXIT_OK


def handle_cooldowns(args: argparse.Namespace, config: OpsGuardConfig) -> int:
    """Show cooldown windows and remaining quota."""
    store = SQLiteStateStore(config.state_db)
    try:
        tracker = CooldownTracker(store, config.policies())
        now = datetime.now(timezone.utc)
        rows = [
            {**window.to_dict(), **tracker.status(window.service, window.action_kind, now)}
            for window in tracker.list_windows(args.service)
        ]
    finally:
        store.close()

    if args.json:
        _print_json(rows)
        return EXIT_OK

    if not rows:
        print("No cooldown windows recorded")
        return EXIT_OK

    for row in rows:
        limit = row["max_occurrences"] if row["max_occurrences"] is not None else "-"
        line = (
            f"{row['service']:<24}{row['action_kind']:<14}"
            f"{row['used']}/{limit}  window since {row['window_start']}"
        )
        if row["retry_after"]:
            line += f"  retry after {row['retry_after']}"
        print(line)
    return EXIT_OK


def handle_history(args: argparse.Namespace, config: OpsGuardConfig) -> int:
    """Show execution records."""
    store = SQLiteStateStore(config.state_db)
    try:
        records = store.list_records(
            incident_id=args.incident,
            service=args.service,
            since=_parse_since(args.since),
            limit=args.limit,
        )
    finally:
        store.close()

    if args.json:
        _print_json([r.to_dict() for r in records])
        return EXIT_OK

    for r in records:
        reason = f" [{r.denial_policy}]" if r.denial_policy else ""
        print(
            f"{r.ended_at.isoformat()}  {r.incident_id:<16}{r.service:<20}"
            f"{r.action_kind.value:<14}{r.outcome.value}{reason}  {r.detail}"
        )
    if not records:
        print("No execution records")
    return EXIT_OK


def handle_tickets(args: argparse.Namespace, config: OpsGuardConfig) -> int:
    """Show escalation tickets."""
    store = SQLiteStateStore(config.state_db)
    try:
        tickets = store.list_tickets(incident_id=args.incident, limit=args.limit)
    finally:
        store.close()

    if args.json:
        _print_json([t.to_dict() for t in tickets])
        return EXIT_OK

    for ticket in tickets:
        print(f"{ticket.ticket_id}  {ticket.summary()}")
    if not tickets:
        print("No escalation tickets")
    return EXIT_OK


def _build_notifiers(config: OpsGuardConfig, console: bool = True) -> List[Any]:
    notifiers: List[Any] = [LoggingNotifier()]
    if console:
        notifiers.append(ConsoleNotifier(use_colors=sys.stdout.isatty()))
    if config.webhook_url:
        notifiers.append(WebhookNotifier(config.webhook_url))
    return notifiers


def handle_run(args: argparse.Namespace, config: OpsGuardConfig) -> int:
    """Run one guarded remediation with a command backend."""
    if args.dry_run:
        config.dry_run = True

    kind = ActionKind(args.action)
    policy = config.policies().get(kind)
    playbook = PlaybookDescriptor(
        name=args.playbook or f"cli-{kind.value}",
        min_tier=args.min_tier if args.min_tier is not None else policy.min_tier,
        action_kind=kind,
    )

    # Subprocess timeouts match the executor bounds for this action kind
    backend = CommandBackend(args.command, ssh=not args.local, timeout=policy.execution_timeout)
    if args.health_url:
        probe = HttpHealthProbe(args.health_url, timeout=policy.verify_timeout)
    else:
        verifier = CommandBackend(args.verify_command, ssh=not args.local, timeout=policy.verify_timeout)
        probe = FunctionProbe(verifier.execute, name="verify-command")

    orchestrator = Orchestrator.from_config(config, notifiers=_build_notifiers(config, console=not args.json))
    try:
        report = orchestrator.remediate(
            RemediationRequest(
                incident_id=args.incident,
                service=args.service,
                host_id=args.host,
                playbook=playbook,
                agent_tier=args.tier,
            ),
            backend=backend,
            probe=probe,
        )
    except IncidentClosedError as e:
        print(f"ERROR: {e}")
        return EXIT_ERROR
    finally:
        orchestrator.close()

    if args.json:
        _print_json(report.to_dict())

    if report.outcome == Outcome.SUCCESS:
        return EXIT_OK
    if report.outcome == Outcome.DENIED:
        return EXIT_DENIED
    return EXIT_ERROR


def create_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser with subcommands.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="opsguard",
        description="OpsGuard: policy guard for automated infrastructure remediation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s policy
  %(prog)s resolve web-01 --action restart --access-map hosts.yaml
  %(prog)s cooldowns --service api
  %(prog)s history --incident inc-42
  %(prog)s tickets --limit 10
  %(prog)s run --incident inc-42 --service api --host web-01 --action restart \\
      --tier 2 --command "docker restart {service}" --health-url http://{address}:8080/health

Environment Variables:
  OPSGUARD_MAX_TIER        Highest agent tier deployed (default: 3)
  OPSGUARD_ACCESS_MAP      Host access map file
  OPSGUARD_STATE_DB        SQLite state database (default: opsguard.db)
  OPSGUARD_DRY_RUN         Skip backends (default: false)
  OPSGUARD_CRED_*          Credential values redacted from escalations
        """
    )

    # Global flags (available to all subcommands)
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Enable quiet mode (only warnings and errors)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--config-file", metavar="PATH", help="Path to configuration file")
    parser.add_argument("--state-db", metavar="PATH", help="Override the state database path")
    parser.add_argument("--access-map", metavar="PATH", help="Override the host access map file")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    subparsers = parser.add_subparsers(dest="subcommand", help="Available subcommands")

    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.set_defaults(func=handle_version)

    config_parser = subparsers.add_parser("config", help="Show or validate configuration")
    config_parser.add_argument(
        "action", nargs="?", choices=["show", "validate"], default="show",
        help="Config action (default: show)"
    )
    config_parser.set_defaults(func=handle_config)

    policy_parser = subparsers.add_parser("policy", help="Show the effective policy table")
    policy_parser.set_defaults(func=handle_policy)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve host access parameters")
    resolve_parser.add_argument("host", help="Host identifier")
    resolve_parser.add_argument(
        "--action", choices=[k.value for k in ActionKind],
        help="Also check whether this action kind is permitted on the host"
    )
    resolve_parser.set_defaults(func=handle_resolve)

    cooldowns_parser = subparsers.add_parser("cooldowns", help="Show cooldown windows")
    cooldowns_parser.add_argument("--service", help="Only this service")
    cooldowns_parser.set_defaults(func=handle_cooldowns)

    history_parser = subparsers.add_parser("history", help="Show execution records")
    history_parser.add_argument("--incident", help="Only this incident")
    history_parser.add_argument("--service", help="Only this service")
    history_parser.add_argument("--since", help="ISO 8601 timestamp lower bound")
    history_parser.add_argument("--limit", type=int, default=50, help="Maximum records (default: 50)")
    history_parser.set_defaults(func=handle_history)

    tickets_parser = subparsers.add_parser("tickets", help="Show escalation tickets")
    tickets_parser.add_argument("--incident", help="Only this incident")
    tickets_parser.add_argument("--limit", type=int, default=50, help="Maximum tickets (default: 50)")
    tickets_parser.set_defaults(func=handle_tickets)

    run_parser = subparsers.add_parser("run", help="Run one guarded remediation")
    run_parser.add_argument("--incident", required=True, help="Incident identifier")
    run_parser.add_argument("--service", required=True, help="Target service")
    run_parser.add_argument("--host", required=True, help="Target host identifier")
    run_parser.add_argument("--action", required=True, choices=[k.value for k in ActionKind])
    run_parser.add_argument("--tier", type=int, help="Tier of the invoking agent")
    run_parser.add_argument("--playbook", help="Playbook name")
    run_parser.add_argument("--min-tier", type=int, help="Playbook minimum tier")
    run_parser.add_argument("--command", required=True, help="Command template, e.g. 'docker restart {service}'")
    verify = run_parser.add_mutually_exclusive_group(required=True)
    verify.add_argument("--health-url", help="HTTP health endpoint template")
    verify.add_argument("--verify-command", help="Command whose success verifies the action")
    run_parser.add_argument("--local", action="store_true", help="Run commands locally instead of over ssh")
    run_parser.add_argument("--dry-run", action="store_true", help="Report what would run")
    run_parser.set_defaults(func=handle_run)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, 'func'):
        parser.print_help()
        return EXIT_ERROR

    try:
        config = _load_config(args)
    except OpsGuardError as e:
        _setup_logging(args, None)
        print(f"ERROR: {e}")
        return EXIT_ERROR

    _setup_logging(args, config)

    try:
        return args.func(args, config)
    except KeyboardInterrupt:
        return 130
    except (OpsGuardError, FileNotFoundError, ValueError) as e:
        logger.error(f"{args.subcommand} failed: {e}", exc_info=args.debug)
        print(f"ERROR: {e}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
