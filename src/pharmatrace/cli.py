"""Typer CLI for PharmaTrace."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="pharmatrace", help="PharmaTrace: batch anchoring, custody and scan resolution")
console = Console()


@app.callback()
def main():
    """Configure logging from settings before any command runs."""
    from pharmatrace.common.config import get_settings
    from pharmatrace.common.logging import setup_logging

    setup_logging(get_settings().log_level)


def _run(coro):
    """Run a coroutine against the configured database, then close it."""
    from pharmatrace import deps

    async def _wrapped():
        db = deps.get_db()
        await db.init()
        try:
            return await coro
        finally:
            await deps.get_event_publisher().close()
            await deps.get_ledger_client().close()
            await db.close()

    return asyncio.run(_wrapped())


@app.command("init-db")
def init_db():
    """Create all tables in the configured database."""
    from pharmatrace import deps

    async def _create():
        await deps.get_db().create_all()

    _run(_create())
    console.print("[bold green]Database initialized[/bold green]")


@app.command()
def resolve(
    code: str = typer.Argument(..., help="Raw scanned string"),
):
    """Resolve a scanned code to a batch and show any recall/expiry alert."""
    from pharmatrace import deps
    from pharmatrace.common.exceptions import MalformedIdentifierError, NotFoundError

    try:
        result = _run(deps.get_resolution_service().resolve(code))
    except MalformedIdentifierError as e:
        console.print(f"[bold red]MALFORMED[/bold red] — {e.message}")
        raise typer.Exit(2)
    except NotFoundError as e:
        console.print(f"[bold red]NOT FOUND[/bold red] — {e.message}")
        console.print(f"  Tried: {', '.join(e.attempted)}")
        raise typer.Exit(1)

    batch = result.batch
    colour = "red" if result.blocked else ("yellow" if result.alert_type else "green")
    label = (result.alert_type or "ok").upper()
    console.print(f"[bold {colour}]{label}[/bold {colour}] — {batch.name} ({batch.batch_number})")
    console.print(f"  Batch: {batch.batch_id}  Anchor: {batch.anchor_id or '-'}")
    console.print(f"  Matched by: {result.strategy} (token from {result.token_source})")
    if result.warning:
        console.print(f"  {result.warning}")
    if result.blocked:
        raise typer.Exit(3)


@app.command("verify-signature")
def verify_signature(
    signature_id: str = typer.Argument(..., help="Signature record id"),
):
    """Verify a digital signature against the current record and the wall clock."""
    from pharmatrace import deps

    async def _verify():
        async with deps.get_db().get_session() as session:
            return await deps.get_signature_service().verify(session, signature_id)

    outcome = _run(_verify())
    if outcome["valid"]:
        console.print(
            f"[bold green]VALID[/bold green] — {outcome['target_type']} {outcome['target_id']}"
        )
    else:
        console.print(f"[bold red]INVALID[/bold red] — {outcome['reason']}")
        raise typer.Exit(1)


@app.command("verify-ledger")
def verify_ledger(
    ledger_id: str = typer.Argument(..., help="Custody ledger id"),
):
    """Check a custody ledger's step chain for tampering."""
    from pharmatrace import deps

    async def _verify():
        async with deps.get_db().get_session() as session:
            return await deps.get_custody_service().verify_chain(session, ledger_id)

    outcome = _run(_verify())
    if outcome["valid"]:
        console.print(f"[bold green]INTACT[/bold green] — {outcome['steps_checked']} steps")
    else:
        console.print(
            f"[bold red]BROKEN[/bold red] at step {outcome['break_at']} "
            f"after {outcome['steps_checked']} good steps"
        )
        raise typer.Exit(1)


@app.command("anchor-status")
def anchor_status(
    batch_id: str = typer.Argument(..., help="Public batch id (DRUG_XXXXXXXX)"),
):
    """Show a batch's anchor state, distribution and custody position."""
    from pharmatrace import deps

    async def _status():
        async with deps.get_db().get_session() as session:
            return await deps.get_batch_service().status_view(session, batch_id)

    view = _run(_status())
    table = Table(title=f"{view['batch_id']} ({view['batch_number']})")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Status", view["status"])
    table.add_row("Anchor state", view["anchor"]["state"])
    table.add_row("Anchor id", view["anchor"]["anchor_id"] or "-")
    table.add_row("Anchor error", view["anchor"]["error"] or "-")
    table.add_row("Distribution", view["distribution"]["status"])
    custody = view["custody"]
    table.add_row("Custody steps", str(custody["total_steps"]) if custody else "-")
    table.add_row("Ledger recalled", str(custody["is_recalled"]) if custody else "-")
    table.add_row("Expiry", f"{view['expiry_date']} ({view['days_until_expiry']} days)")
    console.print(table)


if __name__ == "__main__":
    app()
