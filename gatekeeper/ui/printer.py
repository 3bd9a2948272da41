from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from gatekeeper.core.lifecycle import ActiveRequestView
from gatekeeper.models.live_access import PlatformAccess, RequestEvent
from gatekeeper.models.request import AccessRequest, RequestStatus


# ---------- Helpers ----------

def _iso_utc(ts: Optional[datetime]) -> str:
    """UTC ISO 8601, second precision, with Z suffix."""
    if ts is None:
        return "-"
    return ts.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _fmt_hours(hours: Optional[int]) -> str:
    if hours is None:
        return "-"
    return f"{hours}h"


def _status_style(status: RequestStatus) -> str:
    if status is RequestStatus.APPROVAL_GRANTED:
        return "bold green"
    if status in (RequestStatus.APPROVAL_REJECTED, RequestStatus.CANCELED):
        return "bold red"
    if status is RequestStatus.EXPIRED:
        return "dim"
    return "bold yellow"


def _status_cell(request: AccessRequest, now: datetime) -> str:
    status = request.status_at(now)
    style = _status_style(status)
    return f"[{style}]{status.value}[/{style}]"


def _divider(console: Console, title: Optional[str] = None) -> None:
    """
    Subtle section divider that adapts to terminal width.
      ─────── ACTIVE REQUESTS ─────────────────────
    """
    width = console.size.width if console.is_terminal else 80
    width = max(40, width)

    if title:
        label = f" {title.strip().upper()} "
        left = "─" * 6
        right = "─" * max(0, width - len(left) - len(label))
        console.print(f"[dim]{left}{label}{right}[/dim]")
    else:
        console.print(f"[dim]{'─' * width}[/dim]")


def _table(console: Console) -> Table:
    return Table(
        box=box.SQUARE if console.is_terminal else box.SIMPLE,
        show_header=True,
        header_style="bold white",
        border_style="dim",
        expand=True,
    )


# ---------- UI ----------

def print_active_requests(views: Iterable[ActiveRequestView], console: Optional[Console] = None) -> None:
    console = console or Console(highlight=False)
    views = list(views)

    _divider(console, "PENDING REQUESTS")
    if not views:
        console.print("[dim]No requests are waiting for approval.[/dim]\n")
        return

    table = _table(console)
    table.add_column("ID", justify="right", no_wrap=True)
    table.add_column("REQUESTOR", ratio=2)
    table.add_column("ACCOUNT", no_wrap=True)
    table.add_column("HOURS", justify="center", no_wrap=True)
    table.add_column("USERS", justify="center", no_wrap=True)
    table.add_column("RESOURCES", ratio=3)
    table.add_column("CREATED", no_wrap=True)

    for view in views:
        req = view.request
        resources = "\n".join(
            f"{r.name or r.resource_id} [dim]({r.resource_id}, {r.status})[/dim]" for r in req.resources
        )
        table.add_row(
            str(req.id),
            f"{req.requestor_name}\n[dim]{req.requestor_id}[/dim]",
            f"{req.account} [dim]{req.region}[/dim]",
            _fmt_hours(req.hours),
            str(view.user_count),
            f"[dim]{view.resource_count} x {req.platform}[/dim]\n{resources}",
            _iso_utc(view.created_at),
        )
    console.print(table)
    console.print("")


def print_requests(requests: Iterable[AccessRequest], title: str = "Requests",
                   console: Optional[Console] = None, now: Optional[datetime] = None) -> None:
    console = console or Console(highlight=False)
    now = now or datetime.now(timezone.utc)
    requests = list(requests)

    _divider(console, title)
    if not requests:
        console.print("[dim]Nothing to show.[/dim]\n")
        return

    table = _table(console)
    table.add_column("ID", justify="right", no_wrap=True)
    table.add_column("REQUESTOR", ratio=2)
    table.add_column("ACCOUNT", no_wrap=True)
    table.add_column("HOURS", justify="center", no_wrap=True)
    table.add_column("STATUS", justify="center", no_wrap=True)
    table.add_column("ACTIONED BY", ratio=2)
    table.add_column("COMMENTS", ratio=3)
    table.add_column("EXPIRES", no_wrap=True)

    for req in requests:
        table.add_row(
            str(req.id),
            req.requestor_name,
            req.account,
            _fmt_hours(req.hours),
            _status_cell(req, now),
            req.actioned_by_user_name or "-",
            req.approver_comments or "-",
            _iso_utc(req.expires_at),
        )
    console.print(table)
    console.print("")


def _access_lines(access: PlatformAccess) -> str:
    lines = [f"[green]Linux[/green] {e.name} [dim]{e.ip} #{e.request_id}[/dim]" for e in access.linux]
    lines += [f"[cyan]Windows[/cyan] {e.name} [dim]{e.ip} #{e.request_id}[/dim]" for e in access.windows]
    return "\n".join(lines) or "[dim]-[/dim]"


def print_request_event(event: RequestEvent, console: Optional[Console] = None) -> None:
    console = console or Console(highlight=False)

    _divider(console, f"LIVE ACCESS ({event.event_type.value} OF REQUEST {event.request_id})")
    table = _table(console)
    table.add_column("USER", ratio=2)
    table.add_column("ACTIVE", ratio=3)
    table.add_column("RECENTLY EXPIRED", ratio=3)

    for user in event.users:
        table.add_row(
            f"{user.user_id}\n[dim]{user.email}[/dim]",
            _access_lines(user.active_access),
            _access_lines(user.expired_access),
        )
    console.print(table)
    console.print("")
