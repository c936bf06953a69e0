"""CLI commands for the projection: grant, search, show."""

from __future__ import annotations

import json as json_mod

import click

from issuesync.cli_common import fail, get_service
from issuesync.errors import QueryError, TransientBackendError, ValidationError
from issuesync.filters import terms_filter


@click.command()
@click.argument("project")
@click.option("--user", default=None, help="Grant read access to this user")
@click.option("--group", default=None, help="Grant read access to this group")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def grant(project: str, user: str | None, group: str | None, as_json: bool) -> None:
    """Grant read access on PROJECT to one user or one group."""
    with get_service() as service:
        try:
            grant_key = service.add_grant(project, user=user, group=group)
        except ValidationError as e:
            fail(str(e), as_json=as_json, code="validation_error")
        except TransientBackendError as e:
            fail(str(e), as_json=as_json, code="backend_unavailable")

    if as_json:
        click.echo(json_mod.dumps({"grant": grant_key, "project": project, "user": user, "group": group}))
    else:
        target = f"user {user}" if user is not None else f"group {group}"
        click.echo(f"Granted read on {project} to {target}")


@click.command()
@click.option("--user", default=None, help="Acting user (omit for anonymous)")
@click.option("--group", "groups", multiple=True, help="Group of the acting user (repeatable)")
@click.option("--status", default=None, help="Filter by status")
@click.option("--severity", default=None, help="Filter by severity")
@click.option("--assignee", default=None, help="Filter by assignee")
@click.option("--project", default=None, help="Filter by project key")
@click.option("--limit", default=100, type=click.IntRange(min=1), help="Maximum results (default 100)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def search(
    user: str | None,
    groups: tuple[str, ...],
    status: str | None,
    severity: str | None,
    assignee: str | None,
    project: str | None,
    limit: int,
    as_json: bool,
) -> None:
    """Search indexed issues visible to the acting user and groups."""
    base = terms_filter(status=status, severity=severity, assignee=assignee, root_component_key=project)
    with get_service() as service:
        try:
            docs = service.search(user, groups, base, max_results=limit)
        except QueryError as e:
            fail(str(e), as_json=as_json, code="query_error")

    if as_json:
        click.echo(json_mod.dumps([d.to_dict() for d in docs], indent=2))
        return
    for d in docs:
        click.echo(f"{d.key}  {d.status:<10} {d.severity or '-':<8} {d.component_key}")
    click.echo(f"\n{len(docs)} issue(s)")


@click.command()
@click.argument("key")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def show(key: str, as_json: bool) -> None:
    """Show the indexed document for issue KEY."""
    with get_service() as service:
        doc = service.get_issue(key)

    if doc is None:
        fail(f"Issue not found in index: {key}", as_json=as_json, code="not_found")
    if as_json:
        click.echo(json_mod.dumps(doc.to_dict(), indent=2))
        return
    for name, value in doc.to_dict().items():
        click.echo(f"{name + ':':<20} {value}")


def register(cli: click.Group) -> None:
    """Register projection commands with the CLI group."""
    cli.add_command(grant)
    cli.add_command(search)
    cli.add_command(show)
