"""CLI commands for reviewing and acting on alerts."""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(no_args_is_help=True)
console = Console()

SEVERITY_STYLES = {"Critical": "bold red", "High": "red", "Medium": "yellow", "Low": "dim"}


async def _resolve_alert_id(session, alert_id: str):
    """Accept a full UUID or a unique prefix of one."""
    from sqlalchemy import Text, select

    from pulse.storage.models import Alert

    result = await session.execute(
        select(Alert.id).where(Alert.id.cast(Text).like(f"{alert_id}%")).limit(2)
    )
    ids = result.scalars().all()
    if not ids:
        console.print(f"[red]Alert not found: {alert_id}[/red]")
        raise typer.Exit(1)
    if len(ids) > 1:
        console.print(f"[red]Alert ID prefix is ambiguous: {alert_id}[/red]")
        raise typer.Exit(1)
    return ids[0]


@app.command("list")
def list_alerts(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Pending, Acknowledged or Resolved"),
    severity: Optional[str] = typer.Option(None, "--severity", help="Low, Medium, High or Critical"),
    limit: int = typer.Option(50, "--limit", "-n", help="Max results"),
):
    """List alerts, newest first."""

    async def _list():
        from sqlalchemy import select

        from pulse.storage.db import get_session
        from pulse.storage.models import Alert

        async with get_session() as session:
            query = select(Alert).order_by(Alert.detected_at.desc())
            if status:
                query = query.where(Alert.status == status)
            if severity:
                query = query.where(Alert.severity == severity)

            result = await session.execute(query.limit(limit))
            alerts = result.scalars().all()

            if not alerts:
                console.print("[yellow]No alerts found.[/yellow]")
                return

            table = Table(title="Alerts")
            table.add_column("ID", style="dim")
            table.add_column("Client", style="cyan")
            table.add_column("Trigger")
            table.add_column("Severity")
            table.add_column("Status")
            table.add_column("Source", style="dim")
            table.add_column("Detected")

            for a in alerts:
                style = SEVERITY_STYLES.get(a.severity, "")
                table.add_row(
                    str(a.id)[:8],
                    a.client_name or a.client_id,
                    a.trigger_type,
                    f"[{style}]{a.severity}[/{style}]" if style else a.severity,
                    a.status,
                    a.source,
                    a.detected_at.strftime("%Y-%m-%d %H:%M") if a.detected_at else "",
                )

            console.print(table)

    asyncio.run(_list())


def _transition(alert_id: str, action: str) -> None:
    async def _run():
        from pulse.alerts.lifecycle import InvalidTransitionError, transition_alert
        from pulse.storage.db import get_session

        async with get_session() as session:
            full_id = await _resolve_alert_id(session, alert_id)
            try:
                alert = await transition_alert(session, full_id, action)
            except InvalidTransitionError as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(2)
            console.print(
                f"Alert [cyan]{str(alert.id)[:8]}[/cyan] ({alert.trigger_type}) is now [bold]{alert.status}[/bold]"
            )
            if alert.client_email:
                console.print(f"  Notification logged for {alert.client_email}")

    asyncio.run(_run())


@app.command("ack")
def acknowledge(alert_id: str = typer.Argument(help="Alert ID (first 8 chars is enough)")):
    """Acknowledge a pending alert."""
    _transition(alert_id, "Acknowledged")


@app.command("resolve")
def resolve(alert_id: str = typer.Argument(help="Alert ID (first 8 chars is enough)")):
    """Resolve an alert."""
    _transition(alert_id, "Resolved")


@app.command("stats")
def stats():
    """Show alert counts."""

    async def _stats():
        from pulse.alerts.store import alert_stats
        from pulse.storage.db import get_session

        async with get_session() as session:
            counts = await alert_stats(session)

        table = Table(title="Alert Stats")
        table.add_column("Metric", style="cyan")
        table.add_column("Count", style="green", justify="right")
        table.add_row("Total", str(counts["total_alerts"]))
        table.add_row("Pending", str(counts["pending_alerts"]))
        table.add_row("Critical", str(counts["critical_alerts"]))
        table.add_row("Last 24h", str(counts["recent_alerts"]))
        console.print(table)

    asyncio.run(_stats())


@app.command("notifications")
def notifications(
    alert_id: Optional[str] = typer.Option(None, "--alert", "-a", help="Only this alert (prefix is enough)"),
    limit: int = typer.Option(20, "--limit", "-n", help="Max results"),
):
    """Show logged client notifications, newest first."""

    async def _notifications():
        from pulse.alerts.store import list_notifications
        from pulse.storage.db import get_session

        async with get_session() as session:
            full_id = await _resolve_alert_id(session, alert_id) if alert_id else None
            rows = await list_notifications(session, full_id, limit)

        if not rows:
            console.print("[yellow]No notifications logged.[/yellow]")
            return

        table = Table(title="Notifications")
        table.add_column("Alert", style="dim")
        table.add_column("Recipient", style="cyan")
        table.add_column("Subject")
        table.add_column("Status")
        table.add_column("Sent")
        for n in rows:
            table.add_row(
                str(n.alert_id)[:8],
                n.recipient or "",
                n.subject,
                n.status,
                n.sent_at.strftime("%Y-%m-%d %H:%M") if n.sent_at else "",
            )
        console.print(table)

    asyncio.run(_notifications())
