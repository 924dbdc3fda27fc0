"""Command line interface for the scheduled offboarding service."""
from __future__ import annotations

import json
import secrets
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

import typer

from .catalog import CUSTOM_ACTION_FLAGS, list_templates
from .config import AppConfig, ConfigurationError, load_config
from .engine import build_scheduler
from .errors import OffboardingError
from .models import STATUS_COMPLETED, Scope

app = typer.Typer(help="Schedule and run offboardings across Microsoft 365, Active Directory and Exchange.")
schedule_app = typer.Typer(help="Manage scheduled offboardings.")
app.add_typer(schedule_app, name="schedule")

_CONFIG_OPTION_HELP = "Path to a specific settings file (overrides default)."
_TENANT_OPTION_HELP = "Tenant the command acts for; defaults to the configured Microsoft 365 tenant."


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _scope(config: AppConfig, tenant: Optional[str], operator: Optional[str]) -> Scope:
    return Scope(
        tenant_id=tenant or config.m365.tenant_id or "local",
        session_id=f"cli-{secrets.token_hex(4)}",
        owner_id=operator or "cli",
    )


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2))


def _fail(exc: Exception) -> NoReturn:
    typer.echo(f"Error: {exc}")
    raise typer.Exit(code=1)


def _actions_payload(template: Optional[str], action: Optional[List[str]]) -> Dict[str, Any]:
    if action:
        unknown = [name for name in action if name not in CUSTOM_ACTION_FLAGS]
        if unknown:
            raise typer.BadParameter(
                f"Unknown action(s): {', '.join(unknown)}. Choose from {', '.join(CUSTOM_ACTION_FLAGS)}."
            )
        return {"useCustomActions": True, "customActions": {name: True for name in action}}
    if template:
        return {"template": template}
    return {}


@schedule_app.command("list")
def list_schedules(
    status: Optional[str] = typer.Option(None, "--status", help="Only show records in this status."),
    tenant: Optional[str] = typer.Option(None, "--tenant", help=_TENANT_OPTION_HELP),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """List scheduled offboardings, soonest first."""

    config = _load_configuration(config_path)
    try:
        records = build_scheduler(config).list(_scope(config, tenant, None), status=status)
    except OffboardingError as exc:
        _fail(exc)

    if not records:
        typer.echo("No scheduled offboardings.")
        raise typer.Exit(code=0)

    for record in records:
        typer.echo(
            f"- {record.id}  {record.status:<11}  {record.scheduled_date} {record.scheduled_time} "
            f"{record.timezone}  {record.subject.display_name or record.subject.lookup}"
        )


@schedule_app.command("show")
def show_schedule(
    schedule_id: str = typer.Argument(..., help="Identifier of the scheduled offboarding."),
    tenant: Optional[str] = typer.Option(None, "--tenant", help=_TENANT_OPTION_HELP),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Display one scheduled offboarding."""

    config = _load_configuration(config_path)
    try:
        record = build_scheduler(config).get(schedule_id, _scope(config, tenant, None))
    except OffboardingError as exc:
        _fail(exc)
    _echo_json(record.to_dict())


@schedule_app.command("create")
def create_schedule(
    user_id: str = typer.Argument(..., help="Directory object id of the user to offboard."),
    scheduled_date: str = typer.Argument(..., help="Local date, YYYY-MM-DD."),
    scheduled_time: str = typer.Argument(..., help="Local time, HH:MM."),
    timezone: str = typer.Option(..., "--timezone", help="IANA timezone, e.g. Europe/Berlin."),
    template: Optional[str] = typer.Option(None, "--template", help="Offboarding template to apply."),
    action: Optional[List[str]] = typer.Option(
        None,
        "--action",
        help="Custom action to run instead of a template (repeatable).",
    ),
    display_name: Optional[str] = typer.Option(None, "--display-name", help="User display name."),
    email: Optional[str] = typer.Option(None, "--email", help="User email / UPN."),
    manager_email: Optional[str] = typer.Option(None, "--manager-email", help="Manager to notify."),
    notify_manager: Optional[bool] = typer.Option(
        None, "--notify-manager/--no-notify-manager", help="Default: on when --manager-email is given."
    ),
    notify_user: Optional[bool] = typer.Option(
        None, "--notify-user/--no-notify-user", help="Default: on when --email is given."
    ),
    message: Optional[str] = typer.Option(None, "--message", help="Custom message for notifications."),
    tenant: Optional[str] = typer.Option(None, "--tenant", help=_TENANT_OPTION_HELP),
    operator: Optional[str] = typer.Option(None, "--operator", help="Name recorded as the creator."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Schedule an offboarding."""

    config = _load_configuration(config_path)
    payload: Dict[str, Any] = {
        "userId": user_id,
        "userDisplayName": display_name,
        "userEmail": email,
        "scheduledDate": scheduled_date,
        "scheduledTime": scheduled_time,
        "timezone": timezone,
        "notifyManager": notify_manager,
        "notifyUser": notify_user,
        "managerEmail": manager_email,
        "customMessage": message,
        **_actions_payload(template, action),
    }
    try:
        record = build_scheduler(config).create(_scope(config, tenant, operator), payload)
    except OffboardingError as exc:
        _fail(exc)
    typer.echo(f"Scheduled offboarding {record.id} for {record.scheduled_at.isoformat()}.")


@schedule_app.command("update")
def update_schedule(
    schedule_id: str = typer.Argument(..., help="Identifier of the scheduled offboarding."),
    scheduled_date: Optional[str] = typer.Option(None, "--date", help="New local date, YYYY-MM-DD."),
    scheduled_time: Optional[str] = typer.Option(None, "--time", help="New local time, HH:MM."),
    timezone: Optional[str] = typer.Option(None, "--timezone", help="New IANA timezone."),
    template: Optional[str] = typer.Option(None, "--template", help="Switch to this template."),
    action: Optional[List[str]] = typer.Option(None, "--action", help="Replace custom actions (repeatable)."),
    manager_email: Optional[str] = typer.Option(None, "--manager-email", help="Manager to notify."),
    message: Optional[str] = typer.Option(None, "--message", help="Custom message for notifications."),
    tenant: Optional[str] = typer.Option(None, "--tenant", help=_TENANT_OPTION_HELP),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Edit a scheduled offboarding that has not run yet."""

    config = _load_configuration(config_path)
    patch: Dict[str, Any] = {
        key: value
        for key, value in {
            "scheduledDate": scheduled_date,
            "scheduledTime": scheduled_time,
            "timezone": timezone,
            "managerEmail": manager_email,
            "customMessage": message,
        }.items()
        if value is not None
    }
    patch.update(_actions_payload(template, action))
    try:
        record = build_scheduler(config).update(schedule_id, _scope(config, tenant, None), patch)
    except OffboardingError as exc:
        _fail(exc)
    typer.echo(f"Updated offboarding {record.id}; now due {record.scheduled_at.isoformat()}.")


@schedule_app.command("execute")
def execute_schedule(
    schedule_id: str = typer.Argument(..., help="Identifier of the scheduled offboarding."),
    tenant: Optional[str] = typer.Option(None, "--tenant", help=_TENANT_OPTION_HELP),
    operator: Optional[str] = typer.Option(None, "--operator", help="Name recorded as the executor."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Run a scheduled offboarding now."""

    config = _load_configuration(config_path)
    scope = _scope(config, tenant, operator)
    try:
        outcome = build_scheduler(config).execute(schedule_id, scope, executed_by=scope.owner_id)
    except OffboardingError as exc:
        _fail(exc)

    for result in outcome.results:
        typer.echo(f"[{result.status}] {result.action}: {result.message}")
    typer.echo(f"Offboarding {outcome.schedule.id} {outcome.schedule.status}.")
    if outcome.schedule.error:
        typer.echo(outcome.schedule.error)
    if outcome.schedule.status != STATUS_COMPLETED:
        raise typer.Exit(code=2)


@schedule_app.command("delete")
def delete_schedule(
    schedule_id: str = typer.Argument(..., help="Identifier of the scheduled offboarding."),
    tenant: Optional[str] = typer.Option(None, "--tenant", help=_TENANT_OPTION_HELP),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Delete a scheduled offboarding in any status."""

    config = _load_configuration(config_path)
    try:
        removed = build_scheduler(config).remove(schedule_id, _scope(config, tenant, None))
    except OffboardingError as exc:
        _fail(exc)
    if not removed:
        typer.echo(f"Offboarding {schedule_id} not found.")
        raise typer.Exit(code=1)
    typer.echo(f"Deleted offboarding {schedule_id}.")


@schedule_app.command("executions")
def list_executions(
    schedule_id: Optional[str] = typer.Option(None, "--schedule-id", help="Only runs of this offboarding."),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Only runs that offboarded this user."),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Show at most this many runs."),
    tenant: Optional[str] = typer.Option(None, "--tenant", help=_TENANT_OPTION_HELP),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Show the execution log, most recent run first."""

    config = _load_configuration(config_path)
    try:
        entries = build_scheduler(config).executions(
            _scope(config, tenant, None), schedule_id=schedule_id, user_id=user_id, limit=limit
        )
    except OffboardingError as exc:
        _fail(exc)

    if not entries:
        typer.echo("No executions recorded.")
        return
    for entry in entries:
        typer.echo(
            f"- {entry.finished_at.isoformat()}  {entry.schedule_id}  {entry.status:<9}  "
            f"{entry.successful_steps}/{entry.total_steps} steps  {entry.user_email or entry.user_id}  "
            f"by {entry.executed_by}"
        )


@schedule_app.command("audit")
def show_audit(
    schedule_id: Optional[str] = typer.Option(None, "--schedule-id", help="Only entries for this offboarding."),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Show at most this many entries."),
    tenant: Optional[str] = typer.Option(None, "--tenant", help=_TENANT_OPTION_HELP),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Show who scheduled, changed, ran or deleted offboardings."""

    config = _load_configuration(config_path)
    try:
        entries = build_scheduler(config).audit_trail(
            _scope(config, tenant, None), schedule_id=schedule_id, limit=limit
        )
    except OffboardingError as exc:
        _fail(exc)

    if not entries:
        typer.echo("No audit entries.")
        return
    for entry in entries:
        typer.echo(
            f"- {entry.timestamp.isoformat()}  {entry.action:<20}  {entry.schedule_id}  {entry.actor}: {entry.details}"
        )


@app.command("run-due")
def run_due(
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum records to execute this pass."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Execute every offboarding whose scheduled time has passed."""

    config = _load_configuration(config_path)
    scheduler = build_scheduler(config)
    try:
        scheduler.recover_interrupted(timedelta(minutes=config.scheduler.interrupted_after_minutes))
        processed = scheduler.run_due(limit=limit or config.scheduler.due_batch_limit)
    except OffboardingError as exc:
        _fail(exc)

    if not processed:
        typer.echo("Nothing due.")
        return
    for schedule_id, status in processed.items():
        typer.echo(f"- {schedule_id}: {status}")


@app.command("templates")
def show_templates() -> None:
    """List the available offboarding templates and their steps."""

    _echo_json(list_templates())


@app.command("web")
def serve_web(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(5000, "--port"),
    debug: bool = typer.Option(False, "--debug"),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Serve the JSON API and the due-check worker."""

    from .web import create_app

    create_app(config_path).run(host=host, port=port, debug=debug)


def run():
    app()


if __name__ == "__main__":
    run()
