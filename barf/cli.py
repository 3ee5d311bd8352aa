#!/usr/bin/env python3
"""barf CLI entrypoint."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from barf.errors import BarfError, ConfigError, IssueLocked, RateLimited
from barf.issue.factory import create_issue_store
from barf.issue.model import IssueState
from barf.lib.config import Config, load_config
from barf.runner.locking import list_live_locks
from barf.workflow.batch import STATUS_FAILED, STATUS_LOCKED, BatchRequest, run_auto, run_batch
from barf.workflow.engine import run_loop
from barf.workflow.triage import triage_issue
from barf.workflow.verification import verify_issue

logger = logging.getLogger("barf")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_LOCKED = 3
EXIT_RATE_LIMITED = 4

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(config: Config, verbose: bool = False) -> None:
    """Stderr at LOG_LEVEL (DEBUG with -v), plus LOG_FILE at DEBUG."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    stream = logging.StreamHandler(sys.stderr)
    stream.setLevel(logging.DEBUG if verbose else config.log_level)
    stream.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    root.addHandler(stream)

    if config.log_file:
        try:
            config.log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(config.log_file)
        except OSError as e:
            logger.warning(f"Cannot open log file {config.log_file}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(file_handler)

    # Prefect's own loggers are noisy at INFO
    logging.getLogger("prefect").setLevel(logging.WARNING)


def _select_or_exit(store, mode: str, issue_id: str | None) -> str | None:
    if issue_id:
        return issue_id
    issue = store.auto_select(mode)
    if issue is None:
        print(f"No issue available to {mode}")
        return None
    print(f"Auto-selected {issue.id}: {issue.title}")
    return issue.id


def _batch_exit_code(summaries) -> int:
    for summary in summaries:
        if summary.rate_limited:
            return EXIT_RATE_LIMITED
    for summary in summaries:
        if summary.count(STATUS_FAILED):
            return EXIT_ERROR
    return EXIT_OK


def _print_summary(summary) -> None:
    print(f"{summary.mode}: {len(summary.outcomes)} issue(s)")
    for outcome in summary.outcomes:
        state = f" -> {outcome.final_state}" if outcome.final_state else ""
        detail = f" ({outcome.detail})" if outcome.detail else ""
        print(f"  {outcome.issue_id}: {outcome.status}{state}{detail}")


def cmd_loop(args, config: Config, store) -> int:
    if getattr(args, "batch", None):
        request = BatchRequest(
            mode=args.mode,
            issue_ids=[args.id] if args.id else [],
            concurrency=args.batch,
        )
        summary = asyncio.run(run_batch(request, config, store))
        _print_summary(summary)
        if summary.count(STATUS_LOCKED) == len(summary.outcomes) and summary.outcomes:
            return EXIT_LOCKED
        return _batch_exit_code([summary])

    issue_id = _select_or_exit(store, args.mode, args.id)
    if issue_id is None:
        return EXIT_OK
    asyncio.run(run_loop(issue_id, args.mode, config, store))
    issue = store.fetch(issue_id)
    print(f"{issue_id}: {issue.state.value}")
    return EXIT_OK


def cmd_auto(args, config: Config, store) -> int:
    summaries = asyncio.run(run_auto(config, store, concurrency=args.batch))
    for summary in summaries:
        _print_summary(summary)
    return _batch_exit_code(summaries)


def cmd_triage(args, config: Config, store) -> int:
    result = triage_issue(args.id, config, store)
    if result is None:
        print(f"{args.id}: already triaged")
    elif result.needs_interview:
        print(f"{args.id}: needs interview ({len(result.questions)} question(s) added to the issue)")
    else:
        print(f"{args.id}: ready to plan")
    return EXIT_OK


def cmd_verify(args, config: Config, store) -> int:
    issue = store.fetch(args.id)
    if issue.state != IssueState.COMPLETED:
        print(f"ERROR: {args.id} is {issue.state.value}, only COMPLETED issues can be verified")
        return EXIT_ERROR
    store.lock(args.id, mode="verify")
    try:
        result = verify_issue(args.id, config, store)
    finally:
        store.unlock(args.id)
    if result is None:
        print(f"{args.id}: fix sub-issue, not verified")
    elif result.passed:
        print(f"{args.id}: VERIFIED")
    else:
        failed = ", ".join(f.check for f in result.failures)
        print(f"{args.id}: verification failed ({failed})")
    return EXIT_OK


def cmd_status(args, config: Config, store) -> int:
    issues = store.list_issues()
    if not issues:
        print("No issues")
        return EXIT_OK

    locks = list_live_locks(config.barf_dir)
    for issue in issues:
        flags = []
        if issue.id in locks:
            flags.append(f"locked:{locks[issue.id].mode}")
        if issue.needs_interview:
            flags.append("needs-interview")
        if issue.verify_exhausted:
            flags.append("verify-exhausted")
        if issue.children:
            flags.append(f"children:{','.join(issue.children)}")
        suffix = f"  [{' '.join(flags)}]" if flags else ""
        print(f"{issue.id:<10} {issue.state.value:<12} {issue.title}{suffix}")
    return EXIT_OK


def cmd_unlock(args, config: Config, store) -> int:
    store.unlock(args.id)
    print(f"{args.id}: unlocked")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="barf", description="Drive issues through agent plan/build loops")
    parser.add_argument("--project", type=Path, default=None, help="Project root (default: cwd)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # barf plan [ID]
    p_plan = subparsers.add_parser("plan", help="Plan an issue (auto-selects if no ID)")
    p_plan.add_argument("id", nargs="?", help="Issue ID")
    p_plan.set_defaults(func=cmd_loop, mode="plan")

    # barf build [ID] [--batch N]
    p_build = subparsers.add_parser("build", help="Build an issue (auto-selects if no ID)")
    p_build.add_argument("id", nargs="?", help="Issue ID")
    p_build.add_argument("--batch", type=int, default=None, metavar="N",
                         help="Build every candidate, N at a time")
    p_build.set_defaults(func=cmd_loop, mode="build")

    # barf auto
    p_auto = subparsers.add_parser("auto", help="Triage, plan and build everything actionable")
    p_auto.add_argument("--batch", type=int, default=None, metavar="N", help="Concurrency (default: CONCURRENCY)")
    p_auto.set_defaults(func=cmd_auto)

    # barf triage ID
    p_triage = subparsers.add_parser("triage", help="Decide whether an issue needs an interview")
    p_triage.add_argument("id", help="Issue ID")
    p_triage.set_defaults(func=cmd_triage)

    # barf verify ID
    p_verify = subparsers.add_parser("verify", help="Run verification checks on a COMPLETED issue")
    p_verify.add_argument("id", help="Issue ID")
    p_verify.set_defaults(func=cmd_verify)

    # barf status
    p_status = subparsers.add_parser("status", help="List issues and their states")
    p_status.set_defaults(func=cmd_status)

    # barf unlock ID
    p_unlock = subparsers.add_parser("unlock", help="Remove an issue's lock")
    p_unlock.add_argument("id", help="Issue ID")
    p_unlock.set_defaults(func=cmd_unlock)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.project)
        setup_logging(config, args.verbose)
        store = create_issue_store(config)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG

    if getattr(args, "batch", None) is None and args.command == "auto":
        args.batch = config.concurrency

    try:
        return args.func(args, config, store)
    except IssueLocked as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_LOCKED
    except RateLimited as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_RATE_LIMITED
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except BarfError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
