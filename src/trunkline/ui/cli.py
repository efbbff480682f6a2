"""Command-line interface router for trunkline."""

from __future__ import annotations

import argparse
import os
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from trunkline.config import (
    ConfigLoadError,
    ConfigValidationError,
    branch_prefixes,
    dump_effective_config,
    load_config,
)
from trunkline.constants import INTEGRATION_LOCK_NAME
from trunkline.control_plane.daemon_process import (
    DaemonController,
    DaemonStatus,
    daemon_signals,
    pid_file_guard,
)
from trunkline.control_plane.merge_daemon import MergeDaemon
from trunkline.control_plane.readiness import ReadinessChecker
from trunkline.control_plane.state_machine import StateMachine
from trunkline.domain.errors import (
    TrunklineError,
    UnknownOperationError,
    ValidationError,
)
from trunkline.domain.models import EntryKind, OperationType, Phase, to_iso8601z
from trunkline.integration_plane.conflict_resolution import ConflictResolver
from trunkline.integration_plane.git_engine import GitEngine
from trunkline.integration_plane.issue_tracker import CommandIssueTracker, NullIssueTracker
from trunkline.integration_plane.merge_executor import MergeExecutor, OutcomeStatus
from trunkline.integration_plane.push_verification import PushVerifier
from trunkline.integration_plane.session_host import create_session_host
from trunkline.main import exit_code_for
from trunkline.observability import setup_logging, shutdown_logging
from trunkline.persistence.migrations import DocumentMigrator
from trunkline.persistence.operation_store import OperationStore
from trunkline.persistence.queue_store import QueueStore
from trunkline.ui.render import CLIRenderer, create_renderer

if TYPE_CHECKING:
    from collections.abc import Sequence

    from trunkline.control_plane.state_machine import TransitionResult
    from trunkline.domain.models import QueueEntry
    from trunkline.domain.ports import IssueTracker, SessionHost

WORKER_PHASES: Final[tuple[str, ...]] = (
    Phase.INIT.value,
    Phase.PLANNED.value,
    Phase.QUEUED.value,
    Phase.EXECUTING.value,
    Phase.COMPLETED.value,
    Phase.INTERRUPTED.value,
    Phase.FAILED.value,
    Phase.CANCELLED.value,
)
_LIST_FIELDS: Final[tuple[str, ...]] = (
    "type",
    "phase",
    "held",
    "merge_queued",
    "merge_status",
    "external_ref",
    "updated_at",
)
CLI_LOG_FILENAME: Final[str] = "trunkline.jsonl"
DAEMON_LOG_FILENAME: Final[str] = "daemon.jsonl"


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class _Runtime:
    repo_root: Path
    config: dict[str, Any]
    state_dir: Path
    log_dir: Path
    tracker: IssueTracker
    store: OperationStore
    queue: QueueStore
    machine: StateMachine


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="trunkline",
        description=(
            "trunkline: operation state machine and merge integration queue.\n\n"
            "Common workflows:\n"
            "  trunkline create auth --type feature    Register an operation\n"
            "  trunkline enqueue auth                  Request integration\n"
            "  trunkline daemon start                  Run the merge queue in the background\n"
            "  trunkline list --queue                  Show the merge queue\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Repository root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./trunkline.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Also write logs to stderr.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # create --------------------------------------------------------------
    create_parser = subparsers.add_parser(
        "create", parents=[common], help="Create an operation at phase init."
    )
    create_parser.add_argument("name")
    create_parser.add_argument(
        "--type", dest="op_type", required=True, choices=_operation_types()
    )
    create_parser.add_argument("--external-ref", default=None)
    create_parser.add_argument("--branch", default=None)
    create_parser.add_argument("--worktree", default=None)
    create_parser.set_defaults(handler=_cmd_create)

    # transition ----------------------------------------------------------
    transition_parser = subparsers.add_parser(
        "transition", parents=[common], help="Apply a guarded phase transition."
    )
    transition_parser.add_argument("name")
    transition_parser.add_argument("phase", choices=WORKER_PHASES)
    transition_parser.add_argument("--detail", default=None)
    transition_parser.add_argument("--plan-file", default=None)
    transition_parser.add_argument("--session", default=None)
    transition_parser.add_argument("--external-ref", default=None)
    transition_parser.add_argument("--error", default=None)
    transition_parser.set_defaults(handler=_cmd_transition)

    # enqueue / dequeue ---------------------------------------------------
    enqueue_parser = subparsers.add_parser(
        "enqueue", parents=[common], help="Request integration of an operation or branch."
    )
    enqueue_parser.add_argument("subject")
    enqueue_parser.add_argument("--priority", type=int, default=None)
    enqueue_parser.add_argument("--external-ref", default=None)
    enqueue_parser.add_argument("--start-daemon", action="store_true", default=False)
    enqueue_parser.set_defaults(handler=_cmd_enqueue)

    dequeue_parser = subparsers.add_parser(
        "dequeue", parents=[common], help="Remove a queue entry that is not processing."
    )
    dequeue_parser.add_argument("subject")
    dequeue_parser.set_defaults(handler=_cmd_dequeue)

    # daemon --------------------------------------------------------------
    poll_parser = subparsers.add_parser(
        "poll-once", parents=[common], help="Run one merge queue cycle in the foreground."
    )
    poll_parser.set_defaults(handler=_cmd_poll_once)

    run_daemon_parser = subparsers.add_parser(
        "run-daemon", parents=[common], help="Run the merge queue loop in the foreground."
    )
    run_daemon_parser.set_defaults(handler=_cmd_run_daemon)

    daemon_parser = subparsers.add_parser(
        "daemon", parents=[common], help="Control the background merge queue daemon."
    )
    daemon_parser.add_argument("action", choices=("start", "stop", "status"))
    daemon_parser.set_defaults(handler=_cmd_daemon)

    # inspection ----------------------------------------------------------
    list_parser = subparsers.add_parser(
        "list", parents=[common], help="List operations, the queue, or queue history."
    )
    list_scope = list_parser.add_mutually_exclusive_group()
    list_scope.add_argument("--queue", action="store_true", default=False)
    list_scope.add_argument("--history", action="store_true", default=False)
    list_parser.add_argument("--limit", type=int, default=20, help="History rows to show.")
    list_parser.add_argument("--format", dest="output_format", choices=("text", "json"),
                             default="text")
    list_parser.set_defaults(handler=_cmd_list)

    describe_parser = subparsers.add_parser(
        "describe", parents=[common], help="Show one operation with its recent events."
    )
    describe_parser.add_argument("name")
    describe_parser.add_argument("--events", type=int, default=10)
    describe_parser.add_argument(
        "--format", dest="output_format", choices=("text", "json", "yaml"), default="text"
    )
    describe_parser.set_defaults(handler=_cmd_describe)

    # lifecycle -----------------------------------------------------------
    for command, help_text in (
        ("resume", "Restart a failed/interrupted operation or clear its hold."),
        ("cancel", "Cancel a non-terminal operation."),
        ("hold", "Pause an operation without changing its phase."),
        ("unhold", "Clear the hold flag."),
    ):
        lifecycle_parser = subparsers.add_parser(command, parents=[common], help=help_text)
        lifecycle_parser.add_argument("name")
        if command == "cancel":
            lifecycle_parser.add_argument("--reason", default=None)
        lifecycle_parser.set_defaults(handler=_cmd_lifecycle, lifecycle=command)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the effective (redacted) configuration."
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except TrunklineError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(exit_code_for(exc))
    finally:
        shutdown_logging()
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_create(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    operation = runtime.store.create(
        args.name,
        op_type=args.op_type,
        external_ref=args.external_ref,
        branch=args.branch,
        worktree_path=_optional_path_text(args.worktree, runtime.repo_root),
    )
    _get_renderer(args).text(f"created {operation.name} ({operation.type.value}) at init")
    return 0


def _cmd_transition(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    machine = runtime.machine
    phase = Phase(args.phase)
    detail = args.detail
    if phase is Phase.PLANNED:
        result = machine.plan(args.name, args.plan_file)
    elif phase is Phase.QUEUED:
        result = machine.queue_work(args.name, args.external_ref)
    elif phase is Phase.EXECUTING:
        result = machine.start_execution(args.name, args.session)
    elif phase is Phase.COMPLETED:
        result = machine.complete(args.name)
    elif phase is Phase.INTERRUPTED:
        result = machine.interrupt(args.name, detail)
    elif phase is Phase.FAILED:
        result = machine.fail(args.name, args.error or detail or "failed")
    elif phase is Phase.CANCELLED:
        result = machine.cancel(args.name, detail)
    else:
        result = machine.transition(args.name, phase, detail=detail)
    return _report_transition(args, result)


def _cmd_enqueue(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    subject = args.subject
    priority = args.priority
    if priority is None:
        priority = int(runtime.config["queue"]["default_priority"])

    external_ref = args.external_ref
    if runtime.store.exists(subject):
        result = runtime.machine.request_merge(subject)
        if not result.ok:
            raise CLIError(f"cannot enqueue {subject}: {result.reason}")
        if external_ref is None:
            (recorded_ref,) = runtime.store.read(subject, "external_ref")
            external_ref = recorded_ref if isinstance(recorded_ref, str) else None
        kind = EntryKind.OPERATION
    else:
        kind = EntryKind.BRANCH

    enqueued = runtime.queue.enqueue(
        subject, kind=kind, priority=priority, external_ref=external_ref
    )
    renderer = _get_renderer(args)
    renderer.text(
        f"{enqueued.action.value}: {subject} ({kind.value}, priority {enqueued.entry.priority})"
    )
    if args.start_daemon:
        _render_daemon_status(renderer, _daemon_controller(args, runtime).start())
    return 0


def _cmd_dequeue(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    try:
        removed = runtime.queue.remove(args.subject)
    except ValidationError as exc:
        raise CLIError(str(exc)) from exc
    _get_renderer(args).text(f"removed {removed.subject} ({removed.status.value})")
    return 0


def _cmd_poll_once(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    report = _build_daemon(runtime).run_cycle()
    renderer = _get_renderer(args)
    renderer.kv("Cycle", report.cycle_id)
    if report.records:
        renderer.section("Actions:")
        renderer.items([record.render() for record in report.records])
    else:
        renderer.text("No actions.")
    if report.plan.waiting:
        renderer.section("Waiting:")
        renderer.items([f"{subject}: {reason}" for subject, reason in report.plan.waiting])
    outcome = report.outcome
    if outcome is not None and outcome.status is OutcomeStatus.VERIFICATION_FAILED:
        renderer.section("Verification failure:")
        renderer.text(outcome.message)
        return 3
    if outcome is not None and not outcome.merged and outcome.status is not OutcomeStatus.LOCKED:
        return 1
    return 0


def _cmd_run_daemon(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args, log_filename=DAEMON_LOG_FILENAME)
    controller = _daemon_controller(args, runtime)
    existing = controller.current_pid()
    if existing is not None and existing != os.getpid():
        raise CLIError(f"daemon already running (pid {existing})")

    daemon = _build_daemon(runtime)
    with pid_file_guard(controller.pid_file), daemon_signals(daemon):
        daemon.run()
    return 0


def _cmd_daemon(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    controller = _daemon_controller(args, runtime)
    if args.action == "start":
        status = controller.start()
    elif args.action == "stop":
        status = controller.stop()
    else:
        status = controller.status()
    _render_daemon_status(_get_renderer(args), status)
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    renderer = _get_renderer(args)
    as_json = args.output_format == "json"

    if args.queue or args.history:
        if args.history:
            entries = runtime.queue.history(max(args.limit, 0))
        else:
            snapshot = runtime.queue.snapshot()
            entries = tuple(entry for entry in snapshot.entries if not entry.is_terminal)
            entries = tuple(sorted(entries, key=lambda entry: entry.sort_key))
        if as_json:
            renderer.emit_json([entry.to_dict() for entry in entries])
            return 0
        if not entries:
            renderer.text("Queue is empty." if args.queue else "No history.")
            return 0
        renderer.table(
            ("SUBJECT", "KIND", "PRIORITY", "STATUS", "ENQUEUED", "NOTE"),
            [_queue_row(entry) for entry in entries],
        )
        return 0

    rows: list[dict[str, object]] = []
    for name in runtime.store.names():
        values = runtime.store.read(name, *_LIST_FIELDS)
        row: dict[str, object] = {"name": name}
        row.update(zip(_LIST_FIELDS, values, strict=True))
        rows.append(row)
    if as_json:
        renderer.emit_json(rows)
        return 0
    if not rows:
        renderer.text("No operations.")
        return 0
    renderer.table(
        ("NAME", "TYPE", "PHASE", "HELD", "MERGE", "UPDATED"),
        [
            (
                str(row["name"]),
                str(row["type"]),
                str(row["phase"]),
                "yes" if row["held"] else "",
                _merge_column(row),
                str(row["updated_at"] or ""),
            )
            for row in rows
        ],
    )
    return 0


def _cmd_describe(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    try:
        operation = runtime.store.load(args.name)
    except UnknownOperationError as exc:
        raise CLIError(str(exc)) from exc

    readiness = _readiness_checker(runtime).evaluate(operation)
    blocked = runtime.machine.blocked_reason(args.name)
    events = runtime.store.read_events(args.name, limit=max(args.events, 0))
    payload: dict[str, object] = {
        "operation": operation.to_dict(),
        "merge_ready": readiness.ready,
        "merge_ready_reason": readiness.reason,
        "blocked": blocked,
        "events": [
            {
                "seq": record.seq,
                "ts": to_iso8601z(record.timestamp),
                "event": record.event,
                "detail": record.detail,
            }
            for record in events
        ],
    }

    renderer = _get_renderer(args)
    if args.output_format == "json":
        renderer.emit_json(payload)
        return 0
    if args.output_format == "yaml":
        renderer.emit_yaml(payload)
        return 0

    renderer.heading(operation.name)
    for key in ("type", "phase", "branch", "worktree_path", "external_ref", "merge_status",
                "merge_commit", "merge_error", "error"):
        value = getattr(operation, key)
        if value is not None:
            renderer.kv(f"  {key}", getattr(value, "value", value))
    renderer.kv("  held", "yes" if operation.held else "no")
    renderer.kv("  merge ready", readiness.reason if not readiness.ready else "yes")
    if blocked:
        renderer.kv("  blocked", blocked)
    if events:
        renderer.section("Events:")
        renderer.items([record.render() for record in events], prefix="")
    return 0


def _cmd_lifecycle(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    machine = runtime.machine
    if args.lifecycle == "resume":
        try:
            result = machine.resume(args.name)
        except UnknownOperationError as exc:
            raise CLIError(str(exc)) from exc
    elif args.lifecycle == "cancel":
        result = machine.cancel(args.name, args.reason)
    elif args.lifecycle == "hold":
        result = machine.hold(args.name)
    else:
        result = machine.unhold(args.name)
    return _report_transition(args, result)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, _repo_root(args))
    renderer = _get_renderer(args)
    renderer.kv("Active profile", args.profile or "(default)")
    renderer.text(dump_effective_config(config))
    return 0


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=bool(args.no_color), verbose=bool(args.verbose))


def _report_transition(args: argparse.Namespace, result: TransitionResult) -> int:
    if not result.ok:
        raise CLIError(result.describe())
    _get_renderer(args).text(result.describe())
    return 0


def _render_daemon_status(renderer: CLIRenderer, status: DaemonStatus) -> None:
    if status.running:
        verb = "started" if status.changed else "running"
        renderer.text(f"daemon {verb} (pid {status.pid})")
        renderer.kv("  log", status.log_file)
    else:
        renderer.text("daemon stopped" if status.changed else "daemon not running")


def _queue_row(entry: QueueEntry) -> tuple[str, ...]:
    return (
        entry.subject,
        entry.kind.value,
        str(entry.priority),
        entry.status.value,
        to_iso8601z(entry.enqueued_at),
        entry.note or "",
    )


def _merge_column(row: dict[str, object]) -> str:
    if row.get("merge_status"):
        return str(row["merge_status"])
    return "queued" if row.get("merge_queued") else ""


# ---------------------------------------------------------------------------
# Helpers: config and wiring
# ---------------------------------------------------------------------------


def _repo_root(args: argparse.Namespace) -> Path:
    candidate = Path(str(args.repo_root)).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(f"repo root is not a directory: {candidate}", exit_code=2)
    return candidate


def _load_effective_config(args: argparse.Namespace, repo_root: Path) -> dict[str, Any]:
    overrides: dict[str, object] = {}
    if args.verbose:
        overrides["observability.log_to_console"] = True
    try:
        return load_config(
            args.config_path,
            repo_root=repo_root,
            profile=args.profile,
            cli_overrides=overrides,
        )
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _build_runtime(args: argparse.Namespace, *, log_filename: str = CLI_LOG_FILENAME) -> _Runtime:
    repo_root = _repo_root(args)
    config = _load_effective_config(args, repo_root)
    state_dir = Path(config["paths"]["state_dir"])
    log_dir = Path(config["paths"]["log_dir"])
    setup_logging(config["observability"], log_dir=log_dir, log_filename=log_filename)

    tracker = _build_tracker(config, repo_root)
    store = OperationStore(
        state_dir,
        migrator=DocumentMigrator(tracker),
        event_log_max_bytes=int(config["events"]["max_bytes"]),
        event_log_keep_segments=int(config["events"]["keep_segments"]),
        lock_attempts=int(config["queue"]["lock_attempts"]),
    )
    queue = QueueStore(
        state_dir,
        lock_attempts=int(config["queue"]["lock_attempts"]),
        lock_initial_delay_seconds=float(config["queue"]["lock_initial_delay_seconds"]),
    )
    return _Runtime(
        repo_root=repo_root,
        config=config,
        state_dir=state_dir,
        log_dir=log_dir,
        tracker=tracker,
        store=store,
        queue=queue,
        machine=StateMachine(store, tracker=tracker),
    )


def _build_tracker(config: dict[str, Any], repo_root: Path) -> IssueTracker:
    command = shlex.split(str(config["tracker"]["command"] or ""))
    if not command:
        return NullIssueTracker()
    return CommandIssueTracker(command, cwd=repo_root)


def _git_engine(runtime: _Runtime) -> GitEngine:
    git = runtime.config["git"]
    return GitEngine(runtime.repo_root, trunk_branch=git["trunk_branch"], remote=git["remote"])


def _session_host(runtime: _Runtime) -> SessionHost | None:
    resolution = runtime.config["resolution"]
    command = shlex.split(str(resolution["agent_command"] or ""))
    if not command:
        return None
    return create_session_host(
        resolution["session_backend"],
        command,
        log_dir=runtime.log_dir,
    )


def _readiness_checker(
    runtime: _Runtime,
    *,
    vcs: GitEngine | None = None,
    session_host: SessionHost | None = None,
) -> ReadinessChecker:
    return ReadinessChecker(
        runtime.store,
        vcs=vcs if vcs is not None else _git_engine(runtime),
        session_host=session_host if session_host is not None else _session_host(runtime),
        tracker=runtime.tracker,
        remote=runtime.config["git"]["remote"],
        branch_prefixes=branch_prefixes(runtime.config),
    )


def _build_daemon(runtime: _Runtime) -> MergeDaemon:
    config = runtime.config
    git = config["git"]
    vcs = _git_engine(runtime)
    session_host = _session_host(runtime)
    verifier = PushVerifier(
        vcs,
        remote=git["remote"],
        trunk=git["trunk_branch"],
        attempts=int(config["verification"]["attempts"]),
        delay_seconds=float(config["verification"]["delay_seconds"]),
    )
    resolver = None
    if config["resolution"]["enabled"]:
        resolver = ConflictResolver(
            vcs,
            session_host,
            trunk=git["trunk_branch"],
            timeout_seconds=float(config["resolution"]["timeout_seconds"]),
        )
    executor = MergeExecutor(
        vcs,
        verifier,
        lock_path=runtime.state_dir / INTEGRATION_LOCK_NAME,
        trunk=git["trunk_branch"],
        remote=git["remote"],
        resolver=resolver,
    )
    return MergeDaemon(
        runtime.queue,
        runtime.machine,
        _readiness_checker(runtime, vcs=vcs, session_host=session_host),
        executor,
        verifier,
        vcs,
        remote=git["remote"],
        poll_interval_seconds=float(config["queue"]["poll_interval_seconds"]),
        resume_command=str(config["daemon"]["resume_command"]),
        workdir=runtime.repo_root,
    )


def _daemon_controller(args: argparse.Namespace, runtime: _Runtime) -> DaemonController:
    daemon_args = ["--repo-root", str(runtime.repo_root)]
    if args.config_path:
        daemon_args.extend(["--config", str(Path(args.config_path).expanduser().resolve())])
    if args.profile:
        daemon_args.extend(["--profile", args.profile])
    return DaemonController(
        runtime.state_dir,
        repo_root=runtime.repo_root,
        log_dir=runtime.log_dir,
        daemon_args=daemon_args,
        stop_timeout_seconds=float(runtime.config["daemon"]["stop_timeout_seconds"]),
    )


def _operation_types() -> tuple[str, ...]:
    return tuple(item.value for item in OperationType)


def _optional_path_text(raw: str | None, repo_root: Path) -> str | None:
    if not raw:
        return None
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = repo_root / candidate
    return candidate.resolve().as_posix()


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
