"""
Administrative CLI: ``flask identity`` (roles, deletion) and ``flask requests``
(student request review). Both work whether or not directory sync is enabled.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import click
from flask import current_app
from sqlalchemy import select

from config.ownership import load_policy
from identity_app.models import Identity, db
from identity_app.services.student_requests import StudentRequestService
from identity_app.sync.errors import CascadeError
from identity_app.sync.pipeline.cascade import CascadeManager
from identity_app.sync.pipeline.roles import RoleService
from identity_app.utils.sync import get_orphan_policy


def _resolve_identity(reference: str) -> Identity:
    """Look up by external id first, then by numeric primary key."""
    identity = db.session.execute(select(Identity).where(Identity.external_id == reference)).scalar_one_or_none()
    if identity is None and reference.isdigit():
        identity = db.session.get(Identity, int(reference))
    if identity is None:
        raise click.ClickException(f"Identity '{reference}' not found.")
    return identity


def _parse_assignments(values: tuple[str, ...]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got '{item}'.", param_hint="--set")
        data[key.strip()] = value.strip()
    return data


def _role_service() -> RoleService:
    return RoleService(orphan_policy=get_orphan_policy())


@click.group(name="identity")
def identity_cli():
    """Role assignment and identity maintenance."""


@identity_cli.command("assign-role")
@click.argument("identity_ref")
@click.argument("role", type=click.Choice(["pi", "student"]))
@click.option("--set", "assignments", multiple=True, help="Profile field as KEY=VALUE (repeatable).")
@click.option("--actor", default="cli", show_default=True)
def assign_role(identity_ref: str, role: str, assignments: tuple[str, ...], actor: str):
    identity = _resolve_identity(identity_ref)
    try:
        result = _role_service().assign_role(identity.id, role, _parse_assignments(assignments), actor=actor)
    except CascadeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(result.as_dict()))


@identity_cli.command("change-role")
@click.argument("identity_ref")
@click.argument("role", type=click.Choice(["pi", "student"]))
@click.option("--set", "assignments", multiple=True, help="Profile field as KEY=VALUE (repeatable).")
@click.option("--actor", default="cli", show_default=True)
def change_role(identity_ref: str, role: str, assignments: tuple[str, ...], actor: str):
    identity = _resolve_identity(identity_ref)
    try:
        result = _role_service().change_role(identity.id, role, _parse_assignments(assignments), actor=actor)
    except CascadeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(result.as_dict()))


@identity_cli.command("unassign-role")
@click.argument("identity_ref")
@click.option("--actor", default="cli", show_default=True)
def unassign_role(identity_ref: str, actor: str):
    identity = _resolve_identity(identity_ref)
    try:
        result = _role_service().unassign_role(identity.id, actor=actor)
    except CascadeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(result.as_dict()))


@identity_cli.command("validate-role")
@click.argument("identity_ref")
@click.argument("role", type=click.Choice(["pi", "student"]))
def validate_role(identity_ref: str, role: str):
    """Advisory checks before assigning a role."""
    identity = _resolve_identity(identity_ref)
    report = _role_service().validate_role_assignment(identity.id, role)
    click.echo(
        json.dumps({"is_valid": report.is_valid, "warnings": report.warnings, "suggestions": report.suggestions})
    )


@identity_cli.command("unassigned")
@click.option("--limit", type=int, default=50, show_default=True)
def list_unassigned(limit: int):
    identities = _role_service().list_unassigned(limit=limit)
    if not identities:
        click.echo("No unassigned active identities.")
        return
    for identity in identities:
        click.echo(f"{identity.id:>6}  {identity.external_id:<24} gid={identity.gid_number}  {identity.display_label}")


@identity_cli.command("stats")
def role_stats():
    click.echo(json.dumps(_role_service().role_statistics(), indent=2))


@identity_cli.command("suggest-roles")
@click.argument("gid_number", type=int)
def suggest_roles(gid_number: int):
    """Suggest PI or student roles for unassigned members of a research group."""
    click.echo(json.dumps(_role_service().suggest_roles_for_group(gid_number).as_dict(), indent=2))


@identity_cli.command("delete")
@click.argument("identity_ref")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.option("--actor", default="cli", show_default=True)
def delete_identity(identity_ref: str, yes: bool, actor: str):
    """Hard-delete an identity together with its profiles."""
    identity = _resolve_identity(identity_ref)
    if not yes:
        click.confirm(f"Permanently delete identity {identity.external_id}?", abort=True)
    try:
        summary = CascadeManager(orphan_policy=get_orphan_policy()).delete_identity(identity.id, actor=actor)
    except CascadeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(
        f"Deleted {summary.external_id}: student_profiles={summary.student_profiles_deleted} "
        f"pi_profiles={summary.pi_profiles_deleted} students_detached={summary.students_detached} "
        f"students_unassigned={summary.students_unassigned} requests_closed={summary.requests_closed}"
    )


def _request_service() -> StudentRequestService:
    return StudentRequestService(
        orphan_policy=get_orphan_policy(),
        placeholder_policy=load_policy(current_app.config),
    )


@click.group(name="requests")
def requests_cli():
    """Review student requests raised by PIs."""


@requests_cli.command("list")
@click.option("--status", type=click.Choice(["pending", "approved", "rejected", "withdrawn"]))
@click.option("--pi", "pi_profile_id", type=int, help="Only requests from this PI profile.")
def list_requests(status: Optional[str], pi_profile_id: Optional[int]):
    items = _request_service().list_requests(status=status, pi_profile_id=pi_profile_id)
    if not items:
        click.echo("No requests found.")
        return
    for request in items:
        subject = (request.student_data or {}).get("external_id") or request.target_identity_id or "-"
        click.echo(
            f"{request.id:>6}  {request.request_type.value:<6} {request.status.value:<9} "
            f"pi={request.pi_profile_id} student={subject}  {request.reason or ''}".rstrip()
        )


@requests_cli.command("approve")
@click.argument("request_id", type=int)
@click.option("--reviewer", required=True)
@click.option("--comment")
@click.option("--purge", is_flag=True, help="For delete requests, remove the identity entirely.")
def approve_request(request_id: int, reviewer: str, comment: Optional[str], purge: bool):
    try:
        request = _request_service().approve(request_id, reviewer=reviewer, comment=comment, purge=purge)
    except CascadeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Request {request.id} approved.")


@requests_cli.command("reject")
@click.argument("request_id", type=int)
@click.option("--reviewer", required=True)
@click.option("--comment")
def reject_request(request_id: int, reviewer: str, comment: Optional[str]):
    try:
        request = _request_service().reject(request_id, reviewer=reviewer, comment=comment)
    except CascadeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Request {request.id} rejected.")


@requests_cli.command("history")
@click.argument("request_id", type=int)
def request_history(request_id: int):
    """Show the audit trail of one request as JSON."""
    try:
        trail = _request_service().get_audit_trail(request_id)
    except CascadeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(trail, indent=2))


def register_admin_cli(app) -> None:
    for group in (identity_cli, requests_cli):
        app.cli.commands.pop(group.name, None)
        app.cli.add_command(group)
