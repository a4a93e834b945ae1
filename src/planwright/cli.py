"""CLI commands for managing plan repositories and their workspaces."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

import typer

from .config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    branch_prefix,
    clone_root,
    copy_config_template,
    find_config,
    lock_stale_hours,
    read_config,
    stale_timeout_days,
    tasks_dir,
    trunk_branch,
    write_config,
)
from .plans.hierarchy import CircularDependencyError
from .plans.readiness import find_next_ready_dependency, list_ready_plans
from .plans.renumber import RenumberOptions, renumber
from .plans.schema import PlanNotFoundError, PlanStatus, PlanValidationError, Priority
from .plans.status import mark_task_done, set_plan_status
from .plans.store import PlanStore
from .plans.validation import validate_plans
from .tools.vcs import GitError, GitRepository
from .utils.slug import branch_name
from .workspace.claims import ClaimPersistenceError, ClaimRequest, ClaimStore
from .workspace.identity import RepositoryIdentity, current_user, repository_identity
from .workspace.lock import LockType, WorkspaceLock, WorkspaceLockedError, format_duration
from .workspace.selector import PrepareRequest, WorkspaceSelector, WorkspaceUnavailableError
from .workspace.tracker import WorkspaceInfo, WorkspaceTracker

APP_HELP = "Manage plan documents, their ids, and the workspaces that execute them."

LOGGER = logging.getLogger(__name__)

app = typer.Typer(help=APP_HELP)
workspace_app = typer.Typer(help="Claim plans and manage workspaces.")
assignments_app = typer.Typer(help="Inspect and clean shared plan assignments.")
app.add_typer(workspace_app, name="workspace")
app.add_typer(assignments_app, name="assignments")


@dataclass(slots=True)
class AppContext:
    config: Dict[str, Any]
    repo_root: Path
    config_path: Optional[Path]

    @property
    def store(self) -> PlanStore:
        return PlanStore.from_config(self.config, self.repo_root)

    def repository(self) -> Optional[GitRepository]:
        try:
            return GitRepository.discover(self.repo_root, trunk=trunk_branch(self.config))
        except GitError:
            return None

    def identity(self) -> RepositoryIdentity:
        try:
            return repository_identity(self.repo_root)
        except GitError as error:
            _fail(f"Unable to identify repository: {error}")

    def claims(self, identity: Optional[RepositoryIdentity] = None) -> ClaimStore:
        identity = identity or self.identity()
        return ClaimStore(identity.repository_id, remote_url=identity.remote_url)


def _fail(message: str) -> NoReturn:
    typer.echo(message)
    raise typer.Exit(code=1)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk merged over the defaults."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")
    try:
        return read_config(config_path)
    except ConfigError as error:
        _fail(str(error))


def _resolve_repo_root(start: Path) -> Path:
    try:
        return GitRepository.discover(start).root
    except GitError:
        return start.resolve()


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Path to the configuration file (defaults to the nearest {DEFAULT_CONFIG_NAME}).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Load configuration and set up logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    config_path = config or find_config()
    if config_path is not None:
        config_path = config_path.resolve()
        data = load_config(config_path)
        repo_root = config_path.parent
    else:
        data = copy_config_template()
        repo_root = _resolve_repo_root(Path.cwd())
    ctx.obj = AppContext(config=data, repo_root=repo_root, config_path=config_path)


def _app(ctx: typer.Context) -> AppContext:
    obj = ctx.find_root().obj
    assert isinstance(obj, AppContext)
    return obj


# ---------------------------------------------------------------- plans
@app.command()
def init(ctx: typer.Context) -> None:
    """Write a default configuration file and create the tasks directory."""
    app_ctx = _app(ctx)
    config_path = app_ctx.config_path or app_ctx.repo_root / DEFAULT_CONFIG_NAME
    if config_path.exists():
        typer.echo(f"Configuration already exists at {config_path}")
    else:
        write_config(config_path, copy_config_template())
        typer.echo(f"Wrote {config_path}")
    directory = tasks_dir(app_ctx.config, app_ctx.repo_root)
    directory.mkdir(parents=True, exist_ok=True)
    typer.echo(f"Plans live in {directory}")


@app.command()
def add(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Title of the new plan."),
    goal: str = typer.Option("", "--goal", help="Goal statement."),
    parent: Optional[int] = typer.Option(None, "--parent", help="Parent plan id."),
    depends_on: List[int] = typer.Option([], "--depends-on", help="Plan id this plan depends on."),
    priority: Optional[Priority] = typer.Option(None, "--priority", help="Plan priority."),
) -> None:
    """Create a plan with the next free id."""
    store = _app(ctx).store
    try:
        path, plan = store.create_plan(title, goal=goal, parent=parent, dependencies=depends_on, priority=priority)
    except (PlanNotFoundError, PlanValidationError) as error:
        _fail(str(error))
    typer.echo(f"Created plan {plan.id}: {path}")


@app.command("next")
def next_plan(
    ctx: typer.Context,
    plan: int = typer.Argument(..., help="Root plan id whose dependency tree is searched."),
) -> None:
    """Show the next ready plan within a plan's dependency tree."""
    result = find_next_ready_dependency(plan, _app(ctx).store)
    typer.echo(result.message)
    if result.plan is None:
        raise typer.Exit(code=1)


@app.command()
def ready(
    ctx: typer.Context,
    pending: bool = typer.Option(True, "--pending/--no-pending", help="Include pending plans."),
    in_progress: bool = typer.Option(True, "--in-progress/--no-in-progress", help="Include in-progress plans."),
) -> None:
    """List every ready plan, best candidate first."""
    plans = list_ready_plans(_app(ctx).store, include_pending=pending, include_in_progress=in_progress)
    if not plans:
        typer.echo("No plans are ready.")
        return
    for item in plans:
        priority = item.priority.value if item.priority else "-"
        typer.echo(f"{item.id}\t{item.status.value}\t{priority}\t{item.label}")


@app.command("renumber")
def renumber_command(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the changes without writing files."),
    keep: List[str] = typer.Option([], "--keep", help="Plan file that keeps its id on conflict."),
    conflicts_only: bool = typer.Option(False, "--conflicts-only", help="Only resolve duplicate ids."),
    from_id: Optional[int] = typer.Option(None, "--from", help="Move this plan id..."),
    to_id: Optional[int] = typer.Option(None, "--to", help="...to this id (swapping if taken)."),
) -> None:
    """Resolve duplicate plan ids and reorder plan families."""
    app_ctx = _app(ctx)
    options = RenumberOptions(
        dry_run=dry_run,
        keep=keep,
        conflicts_only=conflicts_only,
        from_id=from_id,
        to_id=to_id,
        cwd=Path.cwd(),
        repo_root=app_ctx.repo_root,
    )
    try:
        result = renumber(app_ctx.store, options, app_ctx.repository())
    except CircularDependencyError as error:
        _fail(f"{error}. No files were changed.")
    except PlanValidationError as error:
        _fail(str(error))

    if result.is_empty:
        typer.echo("No renumbering needed.")
        return
    heading = "Would renumber:" if dry_run else "Renumbered:"
    typer.echo(heading)
    for line in result.describe():
        typer.echo(f"  {line}")


@app.command()
def validate(
    ctx: typer.Context,
    fix: bool = typer.Option(True, "--fix/--no-fix", help="Repair fixable problems."),
) -> None:
    """Check plan files and repair parent/child links, uuids and references."""
    report = validate_plans(_app(ctx).store, fix=fix)
    typer.echo(f"Checked {report.total_files} plan file(s).")
    for path, errors in report.invalid_files.items():
        typer.echo(f"Invalid: {path}")
        for error in errors:
            typer.echo(f"  - {error}")
    for path, keys in report.unknown_keys.items():
        typer.echo(f"Unknown keys in {path}: {', '.join(keys)}")
    for plan_id, paths in report.duplicate_ids.items():
        typer.echo(f"Duplicate id {plan_id}: {', '.join(path.name for path in paths)} (run `planwright renumber`)")
    verb = "Fixed" if fix else "Would fix"
    for line in report.relationship_fixes:
        typer.echo(f"{verb}: {line}")
    if report.fixed_relationships:
        typer.echo(f"{verb} {report.fixed_relationships} parent plan(s).")
    for line in report.skipped_fixes:
        typer.echo(f"Skipped: {line}")
    if report.generated_uuids:
        typer.echo(f"{verb} {len(report.generated_uuids)} missing uuid(s).")
    if not report.ok:
        raise typer.Exit(code=1)


def _claims_or_none(app_ctx: AppContext) -> Optional[ClaimStore]:
    try:
        identity = repository_identity(app_ctx.repo_root)
    except GitError:
        return None
    return ClaimStore(identity.repository_id, remote_url=identity.remote_url)


@app.command("set-status")
def set_status(
    ctx: typer.Context,
    plan: str = typer.Argument(..., help="Plan id or file path."),
    status: PlanStatus = typer.Argument(..., help="New status."),
    force: bool = typer.Option(False, "--force", help="Mark done even with open tasks."),
) -> None:
    """Change a plan's status."""
    app_ctx = _app(ctx)
    try:
        change = set_plan_status(app_ctx.store, plan, status, force=force, claims=_claims_or_none(app_ctx))
    except (PlanNotFoundError, PlanValidationError) as error:
        _fail(str(error))
    for warning in change.warnings:
        typer.echo(f"Warning: {warning}")
    typer.echo(f"Plan {change.plan.id}: {change.previous.value} -> {change.plan.status.value}")
    for parent_id in change.completed_parents:
        typer.echo(f"Plan {parent_id} marked done (all children complete)")


@app.command("task-done")
def task_done(
    ctx: typer.Context,
    plan: str = typer.Argument(..., help="Plan id or file path."),
    task: int = typer.Option(..., "--task", min=1, help="Task number (1-based)."),
    step: Optional[int] = typer.Option(None, "--step", min=1, help="Step number (1-based)."),
) -> None:
    """Mark a task or a single step done."""
    app_ctx = _app(ctx)
    try:
        change = mark_task_done(
            app_ctx.store,
            plan,
            task - 1,
            step_index=step - 1 if step is not None else None,
            claims=_claims_or_none(app_ctx),
        )
    except (PlanNotFoundError, PlanValidationError) as error:
        _fail(str(error))
    for warning in change.warnings:
        typer.echo(f"Warning: {warning}")
    typer.echo(f"Plan {change.plan.id} is {change.plan.status.value}")


# ------------------------------------------------------------ workspaces
def _workspace_root(app_ctx: AppContext) -> Path:
    repo = app_ctx.repository()
    return repo.root if repo is not None else app_ctx.repo_root


@workspace_app.command("claim")
def workspace_claim(ctx: typer.Context, plan: str = typer.Argument(..., help="Plan id or file path.")) -> None:
    """Claim a plan for the current workspace and user."""
    app_ctx = _app(ctx)
    try:
        _, target = app_ctx.store.resolve(plan)
    except (PlanNotFoundError, PlanValidationError) as error:
        _fail(str(error))
    if not target.uuid:
        _fail(f"Plan {target.id} has no uuid; run `planwright validate` first")
    identity = app_ctx.identity()
    request = ClaimRequest(
        uuid=target.uuid,
        repository_id=identity.repository_id,
        workspace_path=_workspace_root(app_ctx),
        user=current_user(),
        repository_remote_url=identity.remote_url,
        status=target.status.value,
    )
    try:
        result = app_ctx.claims(identity).claim_plan(target.id, request)
    except ClaimPersistenceError as error:
        _fail(str(error))
    for warning in result.warnings:
        typer.echo(f"Warning: {warning}")
    if result.changed:
        typer.echo(f"Claimed plan {target.id}")
    else:
        typer.echo(f"Plan {target.id} is already claimed by this workspace")


@workspace_app.command("release")
def workspace_release(ctx: typer.Context, plan: str = typer.Argument(..., help="Plan id or file path.")) -> None:
    """Release this workspace's claim on a plan."""
    app_ctx = _app(ctx)
    try:
        _, target = app_ctx.store.resolve(plan)
    except (PlanNotFoundError, PlanValidationError) as error:
        _fail(str(error))
    if not target.uuid:
        _fail(f"Plan {target.id} has no uuid")
    try:
        result = app_ctx.claims().release_plan(
            target.uuid,
            workspace_path=_workspace_root(app_ctx),
            user=current_user(),
        )
    except ClaimPersistenceError as error:
        _fail(str(error))
    for warning in result.warnings:
        typer.echo(f"Warning: {warning}")
    if result.persisted:
        typer.echo(f"Released plan {target.id}")


@workspace_app.command("lock")
def workspace_lock(
    ctx: typer.Context,
    owner: Optional[str] = typer.Option(None, "--owner", help="Who holds the lock."),
) -> None:
    """Lock the current workspace until `workspace unlock`."""
    app_ctx = _app(ctx)
    root = _workspace_root(app_ctx)
    try:
        info = WorkspaceLock.acquire_lock(
            root,
            "planwright workspace lock",
            owner=owner or current_user(),
            lock_type=LockType.PERSISTENT,
            stale_hours=lock_stale_hours(app_ctx.config),
        )
    except WorkspaceLockedError as error:
        _fail(str(error))
    if info.reclaimed_stale:
        typer.echo("Cleared a stale lock.")
    typer.echo(f"Locked {root}")


@workspace_app.command("unlock")
def workspace_unlock(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Release even if another process holds the lock."),
) -> None:
    """Release the current workspace's lock."""
    root = _workspace_root(_app(ctx))
    info = WorkspaceLock.read(root)
    if info is None:
        typer.echo(f"{root} is not locked")
        return
    force = force or info.type == LockType.PERSISTENT.value
    if not WorkspaceLock.release_lock(root, force=force):
        _fail(f"Lock on {root} is held by pid {info.pid}; use --force to release it")
    typer.echo(f"Unlocked {root}")


@workspace_app.command("list")
def workspace_list(ctx: typer.Context) -> None:
    """List known workspaces of this repository with their lock state."""
    app_ctx = _app(ctx)
    identity = app_ctx.identity()
    workspaces = WorkspaceTracker().find_by_repository(identity.repository_id)
    if not workspaces:
        typer.echo("No workspaces found for this repository")
        return
    stale_hours = lock_stale_hours(app_ctx.config)
    for info in workspaces:
        lock = WorkspaceLock.get_lock_info(info.path, stale_hours=stale_hours) if info.path.is_dir() else None
        state = f"locked ({lock.type}) by pid {lock.pid} for {format_duration(lock.age())}" if lock else "available"
        typer.echo(f"{info.workspace_path}\t{state}")
        typer.echo(f"  task: {info.task_id or '-'}  branch: {info.branch or '-'}")


@workspace_app.command("add")
def workspace_add(
    ctx: typer.Context,
    plan: Optional[str] = typer.Argument(None, help="Plan id or file path to work on."),
    reuse: bool = typer.Option(True, "--reuse/--new", help="Reuse an idle workspace before cloning."),
    base: Optional[str] = typer.Option(None, "--base", help="Ref to branch from."),
    fetch: bool = typer.Option(False, "--fetch", help="Fetch from origin before branching."),
    task_id: Optional[str] = typer.Option(None, "--task-id", help="Identifier recorded for the workspace."),
) -> None:
    """Prepare a workspace for a plan, reusing an idle one when possible."""
    app_ctx = _app(ctx)
    identity = app_ctx.identity()
    plan_id: Optional[int] = None
    plan_title: Optional[str] = None
    if plan is not None:
        try:
            _, target = app_ctx.store.resolve(plan)
        except (PlanNotFoundError, PlanValidationError) as error:
            _fail(str(error))
        plan_id, plan_title = target.id, target.label
    label = task_id or (f"plan-{plan_id}" if plan_id is not None else "workspace")
    request = PrepareRequest(
        base=base or trunk_branch(app_ctx.config),
        branch=branch_name(branch_prefix(app_ctx.config), plan_id, plan_title) if plan_id is not None else None,
        fetch=fetch,
    )
    selector = WorkspaceSelector(
        identity.git_root,
        identity.repository_id,
        clone_root=clone_root(app_ctx.config, identity.git_root),
        stale_hours=lock_stale_hours(app_ctx.config),
    )
    try:
        if reuse:
            selected = selector.select(label, request, plan_id=plan_id, plan_title=plan_title)
        else:
            selected = selector.create_workspace(label, request, plan_id=plan_id, plan_title=plan_title)
    except (GitError, WorkspaceUnavailableError, WorkspaceLockedError) as error:
        _fail(str(error))
    action = "Created" if selected.is_new else "Reusing"
    typer.echo(f"{action} workspace {selected.path}")


@workspace_app.command("register")
def workspace_register(
    ctx: typer.Context,
    task_id: str = typer.Option("", "--task-id", help="Identifier recorded for the workspace."),
) -> None:
    """Record the current checkout as a reusable workspace."""
    app_ctx = _app(ctx)
    identity = app_ctx.identity()
    repo = app_ctx.repository()
    info = WorkspaceTracker().record(
        WorkspaceInfo(
            workspace_path=identity.git_root.as_posix(),
            repository_id=identity.repository_id,
            task_id=task_id,
            branch=repo.current_branch() if repo is not None else None,
        )
    )
    typer.echo(f"Registered {info.workspace_path}")


# ----------------------------------------------------------- assignments
@assignments_app.command("list")
def assignments_list(ctx: typer.Context) -> None:
    """Show every claimed plan of this repository."""
    app_ctx = _app(ctx)
    try:
        entries = app_ctx.claims().list_assignments()
    except ClaimPersistenceError as error:
        _fail(str(error))
    if not entries:
        typer.echo("No assignments.")
        return
    for plan_uuid, entry in sorted(entries.items(), key=lambda item: (item[1].plan_id or 0, item[0])):
        users = ", ".join(entry.users) or "-"
        typer.echo(f"{entry.plan_id or '?'}\t{plan_uuid}\t{users}")
        for workspace in entry.workspace_paths:
            typer.echo(f"  {workspace}")


@assignments_app.command("clean-stale")
def assignments_clean_stale(
    ctx: typer.Context,
    days: Optional[float] = typer.Option(None, "--days", min=0.0, help="Age in days after which claims are stale."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only list stale assignments."),
) -> None:
    """Remove assignments that have not been touched recently."""
    app_ctx = _app(ctx)
    try:
        timeout = days if days is not None else stale_timeout_days(app_ctx.config)
    except ConfigError as error:
        _fail(str(error))
    claims = app_ctx.claims()
    try:
        if dry_run:
            stale = sorted(claims.stale_assignments(timeout))
        else:
            stale = claims.clean_stale(timeout)
    except ClaimPersistenceError as error:
        _fail(str(error))
    if not stale:
        typer.echo("No stale assignments.")
        return
    verb = "Would remove" if dry_run else "Removed"
    for plan_uuid in stale:
        typer.echo(f"{verb} stale assignment {plan_uuid}")


if __name__ == "__main__":  # pragma: no cover
    app()
