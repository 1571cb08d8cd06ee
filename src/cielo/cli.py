from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import click

from cielo.config import CONFIG_FILENAME, CieloConfig, load_config, save_config
from cielo.engine.clock import SystemClock, format_timestamp
from cielo.engine.errors import CoordinationError, NotFound
from cielo.engine.ids import DefaultIdGenerator
from cielo.engine.leases import Lease, LeaseManager
from cielo.engine.queue import QUEUE_GATES, QUEUE_RISKS, QUEUE_STATUSES, QueueItem, QueueLifecycle
from cielo.engine.tasks import PRIORITY_ORDER, TASK_STATUSES, Task, TaskLifecycle
from cielo.engine.workers import WORKER_STATUSES, Worker, WorkerRegistry
from cielo.governance.audit import (
    AUDIT_KINDS,
    AuditEvent,
    BestEffortAudit,
    JsonlAuditSink,
    NullAuditSink,
    filter_events,
    newest_first,
)
from cielo.governance.board import DECISION_TYPES, BoardReviewCoordinator, BoardReviewResult
from cielo.governance.policy import PolicyEngine, PolicyRequest
from cielo.logging import get_logger, setup_logging
from cielo.state.store import FileStateStore, StateStoreError

logger = get_logger("cli")


@dataclass(slots=True)
class CliOptions:
    config_value: str
    coord_dir: str | None


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: CieloConfig
    coord_dir: Path
    store: FileStateStore
    audit: BestEffortAudit
    events: JsonlAuditSink
    leases: LeaseManager
    tasks: TaskLifecycle
    queue: QueueLifecycle
    workers: WorkerRegistry
    policy: PolicyEngine
    board: BoardReviewCoordinator


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _load_runtime(options: CliOptions) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, options.config_value)
    config = load_config(config_path)
    setup_logging(config.logging)

    coord_dir = _resolve_path(repo_root, options.coord_dir or config.coordination.coord_dir)
    store = FileStateStore(
        coord_dir,
        rules_file=config.policy.rules_file,
        lock_timeout_seconds=config.coordination.lock_timeout_seconds,
    )
    clock = SystemClock()
    ids = DefaultIdGenerator()
    events = JsonlAuditSink(coord_dir / config.audit.events_file)
    sink = events if config.audit.enabled else NullAuditSink()
    audit = BestEffortAudit(sink, clock=clock, ids=ids)
    logger.debug("Runtime loaded from %s (coord dir %s)", config_path, coord_dir)

    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        coord_dir=coord_dir,
        store=store,
        audit=audit,
        events=events,
        leases=LeaseManager(
            store,
            clock=clock,
            ids=ids,
            audit=audit,
            default_ttl_minutes=config.leases.default_ttl_minutes,
            expiring_soon_minutes=config.leases.expiring_soon_minutes,
        ),
        tasks=TaskLifecycle(
            store,
            clock=clock,
            ids=ids,
            audit=audit,
            branch_prefix=config.tasks.branch_prefix,
            branch_slug_length=config.tasks.branch_slug_length,
            default_priority=config.tasks.default_priority,
        ),
        queue=QueueLifecycle(
            store,
            clock=clock,
            ids=ids,
            audit=audit,
            default_risk=config.queue.default_risk,
            default_gates=config.queue.default_gates,
            default_rollback=config.queue.default_rollback,
        ),
        workers=WorkerRegistry(store, clock=clock, audit=audit),
        policy=PolicyEngine(store, clock=clock, audit=audit),
        board=BoardReviewCoordinator(
            store,
            clock=clock,
            ids=ids,
            audit=audit,
            history_limit=config.board.history_limit,
            scope_breadth_limit=config.board.scope_breadth_limit,
            cost_threshold=config.board.cost_threshold,
        ),
    )


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except (CoordinationError, StateStoreError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _parse_assignments(values: tuple[str, ...]) -> dict[str, Any]:
    """Turn ``a.b=1`` pairs into nested mappings; values are JSON when they parse."""
    result: dict[str, Any] = {}
    for item in values:
        key, separator, raw = item.partition("=")
        if not separator or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{item}'.")
        try:
            value: Any = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        target = result
        parts = key.split(".")
        for part in parts[:-1]:
            nested = target.get(part)
            if not isinstance(nested, dict):
                nested = {}
                target[part] = nested
            target = nested
        target[parts[-1]] = value
    return result


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _lease_line(lease: Lease) -> str:
    return (
        f"{lease.lease_id} {lease.status:<8} {lease.actor} "
        f"[{', '.join(lease.scope)}] until {format_timestamp(lease.expires_at)}"
    )


def _task_line(task: Task) -> str:
    owner = f" -> {task.assigned_to}" if task.assigned_to else ""
    return f"{task.task_id} {task.status:<11} {task.priority:<8} {task.title}{owner}"


def _queue_line(item: QueueItem) -> str:
    deps = f" deps={','.join(item.deps)}" if item.deps else ""
    return f"{item.queue_id} {item.status:<17} {item.owner} {item.branch} risk={item.risk}{deps}"


def _worker_line(worker: Worker) -> str:
    skills = ", ".join(worker.skills) or "-"
    return (
        f"{worker.worker_id} {worker.status:<9} task={worker.current_task or '-'} "
        f"skills={skills}"
    )


def _audit_line(event: AuditEvent) -> str:
    correlation = f" corr={event.correlation_id}" if event.correlation_id else ""
    return (
        f"{format_timestamp(event.ts)} {event.receipt_id} {event.kind}.{event.event} "
        f"{event.actor}{correlation}"
    )


def _board_summary(result: BoardReviewResult) -> dict[str, Any]:
    return {
        "review_id": result.request.review_id,
        "decision": result.decision,
        "requires_human_escalation": result.requires_human_escalation,
        "escalation_reason": result.escalation_reason,
        "votes": {review.director_id: review.vote for review in result.reviews},
        "reasoning": result.reasoning,
    }


@click.group()
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.option(
    "--coord-dir", envvar="CIELO_COORD", default=None, help="Coordination state directory."
)
@click.pass_context
def cli(ctx: click.Context, config_value: str, coord_dir: str | None) -> None:
    """Cielo coordination CLI."""
    ctx.obj = CliOptions(config_value=config_value, coord_dir=coord_dir)


@cli.command("init")
@click.pass_obj
def init_command(options: CliOptions) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, options.config_value)
    config = load_config(config_path)
    if options.coord_dir:
        config.coordination.coord_dir = options.coord_dir
    save_config(config_path, config)

    runtime = _load_runtime(options)
    rules_path = runtime.coord_dir / config.policy.rules_file
    if not rules_path.exists():
        runtime.store.save_rules([])

    click.echo(f"Initialized Cielo in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Coordination dir: {runtime.coord_dir}")


@cli.group("lease")
def lease_group() -> None:
    """Scope leases."""


@lease_group.command("claim")
@click.argument("actor")
@click.option("--branch", required=True)
@click.option("--scope", "scope", multiple=True, required=True)
@click.option("--intent", default="", show_default=True)
@click.option("--ttl", "ttl_minutes", type=float, default=None, help="Minutes until expiry.")
@click.pass_obj
def lease_claim_command(
    options: CliOptions,
    actor: str,
    branch: str,
    scope: tuple[str, ...],
    intent: str,
    ttl_minutes: float | None,
) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        lease = runtime.leases.claim(actor, branch, scope, intent, ttl_minutes=ttl_minutes)
    click.echo(f"Claimed {lease.lease_id} until {format_timestamp(lease.expires_at)}")


@lease_group.command("renew")
@click.argument("lease_id")
@click.option("--ttl", "ttl_minutes", type=float, default=None)
@click.pass_obj
def lease_renew_command(options: CliOptions, lease_id: str, ttl_minutes: float | None) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        lease = runtime.leases.renew(lease_id, ttl_minutes=ttl_minutes)
    click.echo(f"Renewed {lease.lease_id} until {format_timestamp(lease.expires_at)}")


@lease_group.command("release")
@click.argument("lease_id")
@click.pass_obj
def lease_release_command(options: CliOptions, lease_id: str) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        lease = runtime.leases.release(lease_id)
    click.echo(f"{lease.lease_id} {lease.status}")


@lease_group.command("revoke")
@click.argument("lease_id")
@click.pass_obj
def lease_revoke_command(options: CliOptions, lease_id: str) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        lease = runtime.leases.revoke(lease_id)
    click.echo(f"{lease.lease_id} {lease.status}")


@lease_group.command("list")
@click.option("--actor", default=None)
@click.option("--all", "include_all", is_flag=True, default=False, help="Include ended leases.")
@click.pass_obj
def lease_list_command(options: CliOptions, actor: str | None, include_all: bool) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        if actor:
            if include_all:
                leases = runtime.leases.for_actor(actor)
            else:
                leases = runtime.leases.active_for_actor(actor)
        else:
            leases = runtime.leases.all() if include_all else runtime.leases.active()
    if not leases:
        click.echo("No leases.")
        return
    for lease in leases:
        click.echo(_lease_line(lease))


@lease_group.command("cleanup")
@click.pass_obj
def lease_cleanup_command(options: CliOptions) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        count = runtime.leases.cleanup()
    click.echo(f"Expired {count} lease(s).")


@lease_group.command("conflicts")
@click.option("--scope", "scope", multiple=True, required=True)
@click.option("--exclude-actor", default=None)
@click.pass_obj
def lease_conflicts_command(
    options: CliOptions, scope: tuple[str, ...], exclude_actor: str | None
) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        conflicts = runtime.leases.find_conflicts(scope, exclude_actor=exclude_actor)
    if not conflicts:
        click.echo("No conflicts.")
        return
    for lease in conflicts:
        click.echo(_lease_line(lease))


@cli.group("task")
def task_group() -> None:
    """Task lifecycle."""


@task_group.command("create")
@click.argument("title")
@click.option("--scope", "scope", multiple=True, required=True)
@click.option("--by", "created_by", required=True)
@click.option("--description", default="")
@click.option("--priority", type=click.Choice(list(PRIORITY_ORDER)), default=None)
@click.option("--keyword", "keywords", multiple=True)
@click.option("--skill", "skills", multiple=True)
@click.pass_obj
def task_create_command(
    options: CliOptions,
    title: str,
    scope: tuple[str, ...],
    created_by: str,
    description: str,
    priority: str | None,
    keywords: tuple[str, ...],
    skills: tuple[str, ...],
) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        task = runtime.tasks.create(
            title,
            scope,
            created_by,
            description=description,
            priority=priority,
            keywords=keywords or None,
            required_skills=skills or None,
        )
    click.echo(f"Created {task.task_id} ({task.priority})")


@task_group.command("assign")
@click.argument("task_id")
@click.argument("worker")
@click.pass_obj
def task_assign_command(options: CliOptions, task_id: str, worker: str) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        task = runtime.tasks.assign(task_id, worker)
    click.echo(f"Assigned {task.task_id} to {worker}")


@task_group.command("start")
@click.argument("task_id")
@click.argument("worker")
@click.pass_obj
def task_start_command(options: CliOptions, task_id: str, worker: str) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        task = runtime.tasks.start(task_id, worker)
    click.echo(f"Started {task.task_id} on {task.branch}")


@task_group.command("complete")
@click.argument("task_id")
@click.argument("worker")
@click.option("--queue-id", default=None)
@click.option("--notes", default=None)
@click.pass_obj
def task_complete_command(
    options: CliOptions, task_id: str, worker: str, queue_id: str | None, notes: str | None
) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        task = runtime.tasks.complete(task_id, worker, queue_id=queue_id, notes=notes)
    click.echo(f"Completed {task.task_id}")


@task_group.command("block")
@click.argument("task_id")
@click.argument("reason")
@click.pass_obj
def task_block_command(options: CliOptions, task_id: str, reason: str) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        task = runtime.tasks.block(task_id, reason)
    click.echo(f"Blocked {task.task_id}: {reason}")


@task_group.command("list")
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None)
@click.option("--worker", default=None)
@click.pass_obj
def task_list_command(options: CliOptions, status: str | None, worker: str | None) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        if worker:
            statuses = (status,) if status else TASK_STATUSES
            tasks = runtime.tasks.for_worker(worker, statuses=statuses)
        elif status:
            tasks = runtime.tasks.by_status(status)
        else:
            tasks = runtime.tasks.all()
    if not tasks:
        click.echo("No tasks.")
        return
    for task in tasks:
        click.echo(_task_line(task))


@task_group.command("next")
@click.pass_obj
def task_next_command(options: CliOptions) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        task = runtime.tasks.next_pending()
    if task is None:
        click.echo("No pending tasks.")
        return
    click.echo(_task_line(task))


@cli.group("queue")
def queue_group() -> None:
    """Integration queue."""


@queue_group.command("enqueue")
@click.argument("owner")
@click.argument("branch")
@click.option("--scope", "scope", multiple=True, required=True)
@click.option("--risk", type=click.Choice(QUEUE_RISKS), default=None)
@click.option("--gates", type=click.Choice(QUEUE_GATES), default=None)
@click.option("--rollback", default=None)
@click.option("--notes", default="")
@click.option("--dep", "deps", multiple=True)
@click.option("--lease-id", default=None)
@click.pass_obj
def queue_enqueue_command(
    options: CliOptions,
    owner: str,
    branch: str,
    scope: tuple[str, ...],
    risk: str | None,
    gates: str | None,
    rollback: str | None,
    notes: str,
    deps: tuple[str, ...],
    lease_id: str | None,
) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        item = runtime.queue.enqueue(
            owner,
            branch,
            scope,
            risk=risk,
            gates=gates,
            rollback=rollback,
            notes=notes,
            deps=deps,
            lease_id=lease_id,
        )
    click.echo(f"Enqueued {item.queue_id} ({item.risk} risk, {item.gates} gates)")


@queue_group.command("dequeue")
@click.argument("actor")
@click.option("--id", "queue_id", default=None, help="Pick a specific item.")
@click.pass_obj
def queue_dequeue_command(options: CliOptions, actor: str, queue_id: str | None) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        if queue_id:
            item = runtime.queue.dequeue_by_id(queue_id, actor)
        else:
            item = runtime.queue.dequeue(actor)
    if item is None:
        click.echo("Queue is empty or blocked on dependencies.")
        return
    click.echo(_queue_line(item))


@queue_group.command("approve")
@click.argument("queue_id")
@click.argument("reviewer")
@click.option("--notes", default=None)
@click.pass_obj
def queue_approve_command(
    options: CliOptions, queue_id: str, reviewer: str, notes: str | None
) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        item = runtime.queue.approve(queue_id, reviewer, notes=notes)
    click.echo(f"Approved {item.queue_id}")


@queue_group.command("block")
@click.argument("queue_id")
@click.argument("actor")
@click.argument("notes")
@click.pass_obj
def queue_block_command(options: CliOptions, queue_id: str, actor: str, notes: str) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        item = runtime.queue.block(queue_id, actor, notes)
    click.echo(f"Blocked {item.queue_id}: {notes}")


@queue_group.command("merge")
@click.argument("queue_id")
@click.argument("actor")
@click.option("--notes", default=None)
@click.pass_obj
def queue_merge_command(options: CliOptions, queue_id: str, actor: str, notes: str | None) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        item = runtime.queue.mark_merged(queue_id, actor, notes=notes)
    click.echo(f"Merged {item.queue_id}")


@queue_group.command("list")
@click.option("--status", type=click.Choice(QUEUE_STATUSES), default=None)
@click.pass_obj
def queue_list_command(options: CliOptions, status: str | None) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        items = runtime.queue.by_status(status) if status else runtime.queue.all()
    if not items:
        click.echo("Queue is empty.")
        return
    for item in items:
        click.echo(_queue_line(item))


@cli.group("worker")
def worker_group() -> None:
    """Worker registry and skill matching."""


@worker_group.command("register")
@click.argument("worker_id")
@click.option("--skill", "skills", multiple=True)
@click.option("--capability", "capabilities", multiple=True, help="Scope the worker can own.")
@click.pass_obj
def worker_register_command(
    options: CliOptions, worker_id: str, skills: tuple[str, ...], capabilities: tuple[str, ...]
) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        worker = runtime.workers.register(
            worker_id, capabilities=capabilities or None, skills=skills or None
        )
    click.echo(f"Registered {worker.worker_id}")
    if worker.skills:
        click.echo(f"Skills: {', '.join(worker.skills)}")


@worker_group.command("heartbeat")
@click.argument("worker_id")
@click.pass_obj
def worker_heartbeat_command(options: CliOptions, worker_id: str) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        worker = runtime.workers.heartbeat(worker_id)
    click.echo(f"Heartbeat {worker.worker_id} at {format_timestamp(worker.last_seen_at)}")


@worker_group.command("offline")
@click.argument("worker_id")
@click.pass_obj
def worker_offline_command(options: CliOptions, worker_id: str) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        worker = runtime.workers.mark_offline(worker_id)
    click.echo(f"{worker.worker_id} offline")


@worker_group.command("status")
@click.argument("worker_id")
@click.argument("status", type=click.Choice(WORKER_STATUSES))
@click.option("--task", "task_id", default=None)
@click.pass_obj
def worker_status_command(
    options: CliOptions, worker_id: str, status: str, task_id: str | None
) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        worker = runtime.workers.set_status(worker_id, status, current_task=task_id)
    click.echo(_worker_line(worker))


@worker_group.command("skills")
@click.argument("worker_id")
@click.argument("skills", nargs=-1, required=True)
@click.option("--strength", "strengths", multiple=True, help="Proficiency as SKILL=0..1.")
@click.pass_obj
def worker_skills_command(
    options: CliOptions, worker_id: str, skills: tuple[str, ...], strengths: tuple[str, ...]
) -> None:
    strength: dict[str, float] = {}
    for skill, value in _parse_assignments(strengths).items():
        try:
            strength[skill] = float(value)
        except (TypeError, ValueError) as exc:
            raise click.BadParameter(f"Strength for '{skill}' must be a number.") from exc
    runtime = _load_runtime(options)
    with _domain_errors():
        worker = runtime.workers.register_skills(worker_id, skills, strength=strength or None)
    click.echo(f"{worker.worker_id} skills: {', '.join(worker.skills)}")


@worker_group.command("list")
@click.option("--status", type=click.Choice(WORKER_STATUSES), default=None)
@click.pass_obj
def worker_list_command(options: CliOptions, status: str | None) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        workers = runtime.workers.by_status(status) if status else runtime.workers.all()
    if not workers:
        click.echo("No workers registered.")
        return
    for worker in workers:
        click.echo(_worker_line(worker))


@worker_group.command("find")
@click.option("--skill", "skills", multiple=True, required=True)
@click.option("--any", "match_any", is_flag=True, default=False, help="Match any skill.")
@click.pass_obj
def worker_find_command(options: CliOptions, skills: tuple[str, ...], match_any: bool) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        workers = runtime.workers.query_by_skills(skills, match_all=not match_any)
    if not workers:
        click.echo("No matching workers.")
        return
    for worker in workers:
        click.echo(_worker_line(worker))


@worker_group.command("best")
@click.argument("task_id")
@click.pass_obj
def worker_best_command(options: CliOptions, task_id: str) -> None:
    """Pick the available worker whose skills best fit a task."""
    runtime = _load_runtime(options)
    with _domain_errors():
        task = runtime.tasks.get(task_id)
        if task is None:
            raise NotFound("task", task_id)
        worker = runtime.workers.find_best_worker_for_task(task)
    if worker is None:
        click.echo(f"No available worker fits {task_id}.")
        return
    click.echo(_worker_line(worker))


@cli.group("policy")
def policy_group() -> None:
    """Policy gate."""


@policy_group.command("check")
@click.argument("actor")
@click.argument("action")
@click.option("--scope", "scope", multiple=True)
@click.option("--field", "fields", multiple=True, help="Context value as KEY=VALUE.")
@click.pass_context
def policy_check_command(
    ctx: click.Context,
    actor: str,
    action: str,
    scope: tuple[str, ...],
    fields: tuple[str, ...],
) -> None:
    runtime = _load_runtime(ctx.obj)
    request = PolicyRequest(
        actor=actor,
        action=action,
        scope=scope or None,
        context=_parse_assignments(fields),
    )
    with _domain_errors():
        decision = runtime.policy.evaluate(request)
    _echo_json(decision.to_dict())
    if not decision.allowed:
        ctx.exit(1)


@cli.group("board")
def board_group() -> None:
    """Board of directors review."""


@board_group.command("review")
@click.argument("decision_type", type=click.Choice(DECISION_TYPES))
@click.argument("actor")
@click.argument("description")
@click.option("--scope", "scope", multiple=True)
@click.option("--context", "context_values", multiple=True, help="Context value as KEY=VALUE.")
@click.option("--correlation-id", default=None)
@click.pass_obj
def board_review_command(
    options: CliOptions,
    decision_type: str,
    actor: str,
    description: str,
    scope: tuple[str, ...],
    context_values: tuple[str, ...],
    correlation_id: str | None,
) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        result = runtime.board.review_now(
            decision_type,
            actor,
            description,
            scope=scope or None,
            context=_parse_assignments(context_values),
            correlation_id=correlation_id,
        )
    _echo_json(_board_summary(result))


@board_group.command("submit")
@click.argument("decision_type", type=click.Choice(DECISION_TYPES))
@click.argument("actor")
@click.argument("description")
@click.option("--scope", "scope", multiple=True)
@click.option("--context", "context_values", multiple=True, help="Context value as KEY=VALUE.")
@click.option("--correlation-id", default=None)
@click.pass_obj
def board_submit_command(
    options: CliOptions,
    decision_type: str,
    actor: str,
    description: str,
    scope: tuple[str, ...],
    context_values: tuple[str, ...],
    correlation_id: str | None,
) -> None:
    """Queue a review for later; run it with ``board execute``."""
    runtime = _load_runtime(options)
    with _domain_errors():
        request = runtime.board.submit(
            decision_type,
            actor,
            description,
            scope=scope or None,
            context=_parse_assignments(context_values),
            correlation_id=correlation_id,
        )
    click.echo(f"Submitted {request.review_id}")


@board_group.command("execute")
@click.argument("review_id")
@click.pass_obj
def board_execute_command(options: CliOptions, review_id: str) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        result = runtime.board.execute(review_id)
    _echo_json(_board_summary(result))


@board_group.command("pending")
@click.pass_obj
def board_pending_command(options: CliOptions) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        pending = runtime.board.pending()
    if not pending:
        click.echo("No pending reviews.")
        return
    for request in pending:
        click.echo(
            f"{request.review_id} {request.decision_type} {request.actor}: {request.description}"
        )


@board_group.command("stats")
@click.pass_obj
def board_stats_command(options: CliOptions) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        _echo_json(runtime.board.stats())


@cli.group("audit")
def audit_group() -> None:
    """Audit receipts."""


@audit_group.command("list")
@click.option("--kind", type=click.Choice(AUDIT_KINDS), default=None)
@click.option("--actor", default=None)
@click.option("--correlation-id", default=None)
@click.option("--date", "day", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_obj
def audit_list_command(
    options: CliOptions,
    kind: str | None,
    actor: str | None,
    correlation_id: str | None,
    day: datetime | None,
    limit: int,
) -> None:
    runtime = _load_runtime(options)
    events = filter_events(
        runtime.events.read(),
        kind=kind,
        actor=actor,
        correlation_id=correlation_id,
        day=None if day is None else day.date(),
    )
    events = newest_first(events)[: max(limit, 0)]
    if not events:
        click.echo("No receipts.")
        return
    for event in events:
        click.echo(_audit_line(event))


@audit_group.command("show")
@click.argument("receipt_id")
@click.pass_obj
def audit_show_command(options: CliOptions, receipt_id: str) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        event = runtime.events.get_receipt(receipt_id)
        if event is None:
            raise NotFound("receipt", receipt_id)
    _echo_json(event.to_dict())


@audit_group.command("trace")
@click.argument("correlation_id")
@click.pass_obj
def audit_trace_command(options: CliOptions, correlation_id: str) -> None:
    """Receipts sharing one correlation id, oldest first."""
    runtime = _load_runtime(options)
    events = runtime.events.find_by_correlation(correlation_id)
    if not events:
        click.echo(f"No receipts for {correlation_id}.")
        return
    for event in events:
        click.echo(_audit_line(event))


@cli.command("status")
@click.pass_obj
def status_command(options: CliOptions) -> None:
    runtime = _load_runtime(options)
    with _domain_errors():
        tasks = runtime.tasks.all()
        payload = {
            "coord_dir": str(runtime.coord_dir),
            "active_leases": [lease.to_dict() for lease in runtime.leases.active()],
            "expiring_soon": [lease.lease_id for lease in runtime.leases.expiring_soon()],
            "tasks": {
                status: sum(1 for task in tasks if task.status == status)
                for status in TASK_STATUSES
            },
            "workers": {
                status: len(runtime.workers.by_status(status)) for status in WORKER_STATUSES
            },
            "queue_depth": runtime.queue.depth(),
            "pending_review": [item.queue_id for item in runtime.queue.pending_review()],
            "board": runtime.board.stats(),
        }
    _echo_json(payload)
