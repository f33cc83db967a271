"""
CLI_MAIN
========

Command-line interface for the heartbeat core.

Global Flags:
    --config-dir DIR    Config directory (default: $HEARTBEAT_CONFIG_DIR or
                        ./data/heartbeat/config)

Commands:
    serve               Run agents + scheduler with the operational API
    run                 Run agents + scheduler in the foreground (no API)
    agents              List agents with their persisted state
    runs                Show an agent's run history
    stats               Per-agent outcome counts over a time window
    reminders           List pending reminders
    remind              Add a one-shot reminder
    cancel-reminder     Cancel an unfired reminder

Usage:
    python -m heartbeat_core.cli serve --port 8432
    python -m heartbeat_core.cli run
    python -m heartbeat_core.cli agents
    python -m heartbeat_core.cli runs scout --limit 20
    python -m heartbeat_core.cli remind "call the dentist" --in 90
    python -m heartbeat_core.cli remind "standup" --at "2026-03-02 09:30"
    python -m heartbeat_core.cli cancel-reminder 12
"""

import argparse
import json
import sys
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional


def get_service(config_dir: Optional[str] = None):
    """Build the heartbeat service with error handling."""
    try:
        from ..service import HeartbeatService
        return HeartbeatService.from_config_dir(config_dir)
    except Exception as e:
        print(f"Error initializing heartbeat service: {e}", file=sys.stderr)
        return None


# ============================================================================
# CLI COMMANDS
# ============================================================================

def cli_agents(config_dir: Optional[str] = None) -> List[Dict[str, Any]]:
    """List configured agents with their persisted state."""
    service = get_service(config_dir)
    if service is None:
        return []
    return [s.to_dict() for s in service.registry.list_stats()]


def cli_runs(agent_id: str, limit: int = 20, config_dir: Optional[str] = None) -> Dict[str, Any]:
    """Run history for one agent."""
    service = get_service(config_dir)
    if service is None:
        return {"error": "Failed to initialize heartbeat service"}
    try:
        runs = service.list_runs(agent_id, limit)
    except KeyError:
        return {"error": f"Agent not found: {agent_id}"}
    return {"agent_id": agent_id, "runs": [r.to_dict() for r in runs]}


def cli_stats(hours: float = 24, config_dir: Optional[str] = None) -> Dict[str, Any]:
    """Per-agent outcome counts over the last ``hours``."""
    service = get_service(config_dir)
    if service is None:
        return {"error": "Failed to initialize heartbeat service"}
    return {"hours": hours, "agents": service.run_stats(hours)}


def cli_reminders(config_dir: Optional[str] = None) -> Dict[str, Any]:
    service = get_service(config_dir)
    if service is None:
        return {"error": "Failed to initialize heartbeat service"}
    if service.scheduler is None:
        return {"error": "Scheduler is disabled in config"}
    return {"reminders": [r.to_dict() for r in service.scheduler.list_reminders()]}


def cli_remind(
    message: str,
    at: Optional[str] = None,
    in_minutes: Optional[float] = None,
    config_dir: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Add a one-shot reminder.

    Args:
        message: Reminder text.
        at: Local time "YYYY-MM-DD HH:MM" in the scheduler timezone.
        in_minutes: Delay from now in minutes.
    """
    if (at is None) == (in_minutes is None):
        return {"error": "Provide exactly one of --at or --in"}

    service = get_service(config_dir)
    if service is None:
        return {"error": "Failed to initialize heartbeat service"}
    if service.scheduler is None:
        return {"error": "Scheduler is disabled in config"}

    if at is not None:
        try:
            fire_at: Any = datetime.strptime(at, "%Y-%m-%d %H:%M")
        except ValueError:
            return {"error": f"Invalid --at value (expected YYYY-MM-DD HH:MM): {at}"}
    else:
        fire_at = int(service.clock.epoch() + in_minutes * 60)

    try:
        reminder_id = service.scheduler.add_reminder(fire_at, message)
    except ValueError as e:
        return {"error": str(e)}
    return {"id": reminder_id, "message": message}


def cli_cancel_reminder(reminder_id: int, config_dir: Optional[str] = None) -> Dict[str, Any]:
    service = get_service(config_dir)
    if service is None:
        return {"error": "Failed to initialize heartbeat service"}
    if service.scheduler is None:
        return {"error": "Scheduler is disabled in config"}
    if not service.scheduler.cancel_reminder(reminder_id):
        return {"error": f"Reminder {reminder_id} not found or already fired"}
    return {"status": "cancelled", "id": reminder_id}


# ============================================================================
# LONG-RUNNING MODES
# ============================================================================

def cli_run_foreground(config_dir: Optional[str] = None) -> None:
    """Run agents and scheduler until Ctrl+C."""
    service = get_service(config_dir)
    if service is None:
        return

    service.start()
    print(f"\nHeartbeat core running: {len(service.registry)} agent(s), "
          f"scheduler {'on' if service.scheduler and service.scheduler.is_running() else 'off'}")
    print("Press Ctrl+C to stop\n")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        service.stop()


def cli_serve(host: Optional[str] = None, port: Optional[int] = None,
              config_dir: Optional[str] = None) -> None:
    """Run agents and scheduler with the operational API."""
    import uvicorn

    from ..api.app import create_app

    service = get_service(config_dir)
    if service is None:
        return

    host = host or service.config.api.host
    port = port or service.config.api.port

    print("\nHeartbeat Core API")
    print("=" * 50)
    print(f"API:       http://{host}:{port}")
    print(f"API Docs:  http://{host}:{port}/docs")
    print(f"Agents:    {len(service.registry)}")
    print("\nPress Ctrl+C to stop\n")

    service.start()
    try:
        uvicorn.run(create_app(service), host=host, port=port, log_level="info")
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        service.stop()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def _print_error_or(result: Dict[str, Any], as_json: bool) -> bool:
    """Print an error (returns True) or nothing."""
    if "error" in result:
        if as_json:
            print(json.dumps(result, indent=2))
        else:
            print(f"Error: {result['error']}")
        return True
    return False


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="heartbeat-core",
        description="Heartbeat core - agent heartbeats and time-keeping scheduler",
    )
    parser.add_argument(
        "--config-dir",
        help="Config directory (default: $HEARTBEAT_CONFIG_DIR or ./data/heartbeat/config)",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    serve_parser = subparsers.add_parser("serve", help="Run agents + scheduler with the API")
    serve_parser.add_argument("--host", help="Bind host (default: api.host)")
    serve_parser.add_argument("--port", type=int, help="Bind port (default: api.port)")

    subparsers.add_parser("run", help="Run agents + scheduler in the foreground")

    agents_parser = subparsers.add_parser("agents", help="List agents")
    agents_parser.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    runs_parser = subparsers.add_parser("runs", help="Show an agent's run history")
    runs_parser.add_argument("agent_id", help="Agent ID")
    runs_parser.add_argument("--limit", "-n", type=int, default=20, help="Max records")
    runs_parser.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    stats_parser = subparsers.add_parser("stats", help="Per-agent outcome counts")
    stats_parser.add_argument("--hours", type=float, default=24, help="Window in hours (default: 24)")
    stats_parser.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    reminders_parser = subparsers.add_parser("reminders", help="List pending reminders")
    reminders_parser.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    remind_parser = subparsers.add_parser("remind", help="Add a one-shot reminder")
    remind_parser.add_argument("message", help="Reminder text")
    remind_parser.add_argument("--at", help='Local time "YYYY-MM-DD HH:MM" (scheduler timezone)')
    remind_parser.add_argument("--in", dest="in_minutes", type=float, help="Minutes from now")

    cancel_parser = subparsers.add_parser("cancel-reminder", help="Cancel an unfired reminder")
    cancel_parser.add_argument("reminder_id", type=int, help="Reminder ID")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    # Configure centralized logging before any command runs
    from ..config.loader import get_config_manager
    from ..logging_config import setup_logging_from_config
    setup_logging_from_config(get_config_manager(args.config_dir).global_config)

    if args.command == "serve":
        cli_serve(args.host, args.port, args.config_dir)

    elif args.command == "run":
        cli_run_foreground(args.config_dir)

    elif args.command == "agents":
        agents = cli_agents(args.config_dir)
        if args.json:
            print(json.dumps(agents, indent=2))
        elif agents:
            print("\nAgents:")
            for a in agents:
                flag = "+" if a["enabled"] else "-"
                print(f"  [{flag}] {a['id']}: {a['status']}, cycle {a['cycle']}, "
                      f"{a['total_runs']} runs, {a['consecutive_errors']} consecutive errors")
                if a.get("last_error"):
                    print(f"      last error: {a['last_error'][:80]}")
        else:
            print("No agents configured.")

    elif args.command == "runs":
        result = cli_runs(args.agent_id, args.limit, args.config_dir)
        if _print_error_or(result, args.json):
            return 1
        if args.json:
            print(json.dumps(result, indent=2))
        elif result["runs"]:
            print(f"\nRecent runs for {args.agent_id}:")
            for r in result["runs"]:
                line = f"  #{r['cycle']} {r['started_at']} {r['outcome']} ({r['duration_ms']}ms)"
                if r.get("error"):
                    line += f" - {r['error'][:60]}"
                print(line)
        else:
            print("No runs recorded.")

    elif args.command == "stats":
        result = cli_stats(args.hours, args.config_dir)
        if _print_error_or(result, args.json):
            return 1
        if args.json:
            print(json.dumps(result, indent=2))
        elif result["agents"]:
            print(f"\nLast {args.hours:g}h:")
            for s in result["agents"]:
                avg = s.get("avg_duration_ms") or 0
                print(f"  {s['agent_id']}: {s['total']} runs, {s['successes']} ok, "
                      f"{s['errors']} errors, {s['rate_limits']} rate-limited, avg {avg:.0f}ms")
        else:
            print("No runs in window.")

    elif args.command == "reminders":
        result = cli_reminders(args.config_dir)
        if _print_error_or(result, args.json):
            return 1
        if args.json:
            print(json.dumps(result, indent=2))
        elif result["reminders"]:
            print("\nPending reminders:")
            for r in result["reminders"]:
                print(f"  #{r['id']} {r['fire_at']}: {r['message']}")
        else:
            print("No pending reminders.")

    elif args.command == "remind":
        result = cli_remind(args.message, args.at, args.in_minutes, args.config_dir)
        if _print_error_or(result, False):
            return 1
        print(f"Reminder #{result['id']} added.")

    elif args.command == "cancel-reminder":
        result = cli_cancel_reminder(args.reminder_id, args.config_dir)
        if _print_error_or(result, False):
            return 1
        print(f"Reminder #{args.reminder_id} cancelled.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
