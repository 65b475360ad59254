"""ballotbox CLI — command-line interface for a persisted election.

The election lives in an append-only JSONL event log under the data
directory. Every command replays the log, applies at most one mutation
and exits. Mutating commands hold the log's file lock from replay to
append, so concurrent invocations are applied one after another.

Usage:
    ballotbox create --title "Board 2026" --duration 60 --as 0xowner
    ballotbox add-proposal --name Alice --description "Treasurer" --as 0xowner
    ballotbox authorize --voter 0xvoter --as 0xowner
    ballotbox start --as 0xowner
    ballotbox vote --proposal 0 --as 0xvoter
    ballotbox end --as 0xowner
    ballotbox status
    ballotbox results
    ballotbox events --after 3
    ballotbox check-invariants

The --as identity is whatever the external authentication layer
resolved the caller to. It is trusted as given.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from ballotbox.config import Settings, load_environment
from ballotbox.errors import ReplayError
from ballotbox.persistence.event_log import EventLog, EventLogError
from ballotbox.persistence.file_lock import FileLock
from ballotbox.service import ElectionService, ServiceResult

logger = logging.getLogger(__name__)

_MUTATING = {"create", "add-proposal", "authorize", "start", "vote", "end"}


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _report(result: ServiceResult, message: str) -> int:
    if result.success:
        print(message.format(**result.data))
        return 0
    print(f"Failed [{result.code}]: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def _load_service(settings: Settings) -> ElectionService:
    return ElectionService.from_path(settings.event_log_path)


def cmd_create(args: argparse.Namespace, settings: Settings) -> int:
    path = settings.event_log_path
    if path.exists() and path.stat().st_size > 0:
        print(f"Failed: an election already exists at {path}", file=sys.stderr)
        return 1
    duration = args.duration if args.duration is not None else settings.default_duration_minutes
    try:
        service = ElectionService.create(
            args.title, duration, args.caller,
            event_log=EventLog(storage_path=path),
        )
    except ValueError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(f"Created election {service.election.title!r} owned by {service.election.owner}")
    return 0


def cmd_add_proposal(args: argparse.Namespace, settings: Settings) -> int:
    service = _load_service(settings)
    result = service.add_proposal(args.caller, args.name, args.description, args.content_ref)
    return _report(result, "Added proposal #{proposal_id}")


def cmd_authorize(args: argparse.Namespace, settings: Settings) -> int:
    service = _load_service(settings)
    result = service.authorize(args.caller, args.voter)
    return _report(result, "Authorized voter: {voter_id}")


def cmd_start(args: argparse.Namespace, settings: Settings) -> int:
    service = _load_service(settings)
    result = service.start_voting(args.caller)
    return _report(result, "Voting started at {start_time} ({time_remaining}s remaining)")


def cmd_vote(args: argparse.Namespace, settings: Settings) -> int:
    service = _load_service(settings)
    result = service.vote(args.caller, args.proposal)
    return _report(result, "Vote recorded for proposal #{proposal_id}")


def cmd_end(args: argparse.Namespace, settings: Settings) -> int:
    service = _load_service(settings)
    result = service.end_voting(args.caller)
    return _report(result, "Voting ended with {total_votes} vote(s)")


def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    _print_json(_load_service(settings).status())
    return 0


def cmd_proposals(args: argparse.Namespace, settings: Settings) -> int:
    service = _load_service(settings)
    if args.id is None:
        _print_json(service.proposals())
        return 0
    result = service.proposal(args.id)
    if not result.success:
        print(f"Failed [{result.code}]: {'; '.join(result.errors)}", file=sys.stderr)
        return 1
    _print_json(result.data)
    return 0


def cmd_results(args: argparse.Namespace, settings: Settings) -> int:
    _print_json(_load_service(settings).results())
    return 0


def cmd_voter(args: argparse.Namespace, settings: Settings) -> int:
    _print_json(_load_service(settings).voter(args.id))
    return 0


def cmd_events(args: argparse.Namespace, settings: Settings) -> int:
    _print_json(_load_service(settings).events(after=args.after))
    return 0


def cmd_check_invariants(args: argparse.Namespace, settings: Settings) -> int:
    errors = _load_service(settings).check_invariants()
    if errors:
        for err in errors:
            print(f"INVARIANT VIOLATION: {err}", file=sys.stderr)
        return 1
    print("All invariants hold")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ballotbox",
        description="Single-election ledger CLI",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Directory holding the event log (default: $BALLOTBOX_DATA_DIR or data/)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file (default: search from the working directory)",
    )
    sub = parser.add_subparsers(dest="command")

    def _caller(p: argparse.ArgumentParser) -> None:
        p.add_argument("--as", dest="caller", required=True, help="Caller identity")

    p_create = sub.add_parser("create", help="Create a new election")
    p_create.add_argument("--title", required=True, help="Election title")
    p_create.add_argument(
        "--duration", type=int, default=None,
        help="Voting window in minutes (default: $BALLOTBOX_DEFAULT_DURATION or 60)",
    )
    _caller(p_create)

    p_add = sub.add_parser("add-proposal", help="Add a proposal (owner, setup phase)")
    p_add.add_argument("--name", required=True, help="Proposal name")
    p_add.add_argument("--description", default="", help="Proposal description")
    p_add.add_argument("--content-ref", default="", help="Off-system content reference")
    _caller(p_add)

    p_auth = sub.add_parser("authorize", help="Authorize a voter (owner)")
    p_auth.add_argument("--voter", required=True, help="Voter identity")
    _caller(p_auth)

    _caller(sub.add_parser("start", help="Open the voting window (owner)"))

    p_vote = sub.add_parser("vote", help="Cast a vote")
    p_vote.add_argument("--proposal", type=int, required=True, help="Proposal id")
    _caller(p_vote)

    _caller(sub.add_parser("end", help="Close voting after the window elapses (owner)"))

    sub.add_parser("status", help="Show election status")

    p_props = sub.add_parser("proposals", help="List proposals")
    p_props.add_argument("--id", type=int, default=None, help="Show a single proposal")

    sub.add_parser("results", help="Show the tally")

    p_voter = sub.add_parser("voter", help="Show a voter record")
    p_voter.add_argument("--id", required=True, help="Voter identity")

    p_events = sub.add_parser("events", help="List event records")
    p_events.add_argument(
        "--after", type=int, default=0,
        help="Skip the first N events (polling cursor)",
    )

    sub.add_parser("check-invariants", help="Replay the log and verify ledger invariants")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        settings = load_environment(args.env_file).with_data_dir(args.data_dir)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "create": cmd_create,
        "add-proposal": cmd_add_proposal,
        "authorize": cmd_authorize,
        "start": cmd_start,
        "vote": cmd_vote,
        "end": cmd_end,
        "status": cmd_status,
        "proposals": cmd_proposals,
        "results": cmd_results,
        "voter": cmd_voter,
        "events": cmd_events,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        if args.command in _MUTATING:
            with FileLock(settings.event_log_path):
                return handler(args, settings)
        return handler(args, settings)
    except FileNotFoundError as e:
        print(f"Failed: {e}. Run 'ballotbox create' first.", file=sys.stderr)
        return 1
    except (EventLogError, ReplayError) as e:
        logger.error("Event log at %s is unusable: %s", settings.event_log_path, e)
        print(f"Failed: corrupt event log: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        logger.error("I/O failure on %s: %s", settings.event_log_path, e)
        print(f"Failed: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
