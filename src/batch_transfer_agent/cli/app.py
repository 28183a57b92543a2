"""CLI for the batch transfer agent - parse, send, schedule and manage the desk."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

app = typer.Typer(
    name="batch-transfer-agent",
    help="Turn free-form recipient lists into verified, executed token transfers.",
    no_args_is_help=True,
)
console = Console()

_selected_profile: str = "default"


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        console.print(f"batch-transfer-agent {version('batch-transfer-agent')}")
        raise typer.Exit()


@app.callback()
def main(
    profile: str = typer.Option(
        "default",
        "--profile",
        "-P",
        help="Wallet profile to operate on",
        envvar="BATCH_TRANSFER_PROFILE",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show agent logs"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Turn free-form recipient lists into verified, executed token transfers."""
    global _selected_profile
    _selected_profile = profile
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, rich_tracebacks=True)],
        )


def _run(coro):
    """Run an async function synchronously."""
    return asyncio.run(coro)


async def _load():
    from batch_transfer_agent.core.service import TransferAgentService

    try:
        return await TransferAgentService.load(profile=_selected_profile)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _read_input(file: Path | None, text: str | None) -> str:
    if text:
        return text
    if file is None:
        console.print("[red]Provide a FILE or --text.[/red]")
        raise typer.Exit(1)
    return file.read_text(encoding="utf-8")


def _requests_table(requests, title: str) -> Table:
    table = Table(title=title)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Recipient")
    table.add_column("Amount", justify="right")
    table.add_column("Intent")
    for i, r in enumerate(requests, start=1):
        intent = r.intent.value if not r.delay_seconds else f"{r.intent.value} (+{r.delay_seconds}s)"
        table.add_row(
            str(i),
            r.display_name or "-",
            r.recipient or f"[yellow]{r.recipient_raw} (unresolved)[/yellow]",
            f"{r.amount} {r.token_symbol}",
            intent,
        )
    return table


_STATUS_COLORS = {"WAITING": "dim", "EXECUTING": "yellow", "SENT": "green", "FAILED": "red"}


# ------------------------------------------------------------------
# init
# ------------------------------------------------------------------


@app.command()
def init(
    chain: str = typer.Option("vision-testnet", "--chain", "-c", help="Chain preset"),
    user_id: str = typer.Option("local-user", "--user-id", "-u", help="Owner id used for notifications"),
):
    """Create a wallet profile in the current directory."""
    from batch_transfer_agent.core.service import TransferAgentService

    async def _init():
        service = await TransferAgentService.init(profile=_selected_profile, chain=chain, user_id=user_id)
        profile_dir = service.profile_dir
        await service.shutdown()
        return profile_dir

    try:
        profile_dir = _run(_init())
    except KeyError as e:
        console.print(f"[red]{e.args[0]}[/red]")
        raise typer.Exit(1)

    console.print(Panel(
        f"[bold green]Profile '{_selected_profile}' initialized![/bold green]\n\n"
        f"Directory: {profile_dir}\n"
        f"Config: {profile_dir / 'config.yaml'}\n"
        f"Chain: [cyan]{chain}[/cyan]\n\n"
        f"Next steps:\n"
        f"  batch-transfer-agent wallet import\n"
        f"  batch-transfer-agent contacts add Alice 0x...\n"
        f"  batch-transfer-agent send recipients.txt",
        title="Batch Transfer Agent",
    ))


# ------------------------------------------------------------------
# parse / send / schedule
# ------------------------------------------------------------------


@app.command()
def parse(
    file: Path = typer.Argument(None, help="Text/CSV file with one transfer per line", exists=True, dir_okay=False),
    text: str = typer.Option(None, "--text", "-t", help="Inline text instead of a file"),
):
    """Show how a recipient list would be understood, without sending."""
    raw = _read_input(file, text)

    async def _parse():
        service = await _load()
        requests = await service.parse(raw)
        await service.shutdown()
        return requests

    requests = _run(_parse())
    if not requests:
        console.print("[yellow]No transfers found in the input.[/yellow]")
        return
    console.print(_requests_table(requests, f"Parsed {len(requests)} transfer(s)"))


@app.command()
def send(
    file: Path = typer.Argument(None, help="Text/CSV file with one transfer per line", exists=True, dir_okay=False),
    text: str = typer.Option(None, "--text", "-t", help="Inline text instead of a file"),
    intents: Path = typer.Option(None, "--intents", help="JSON file of assistant intent records", exists=True),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Execute a batch of transfers. Requires the wallet password."""
    from batch_transfer_agent.core.agent import build_report
    from batch_transfer_agent.wallet.keystore import CredentialError

    raw = None if intents else _read_input(file, text)

    async def _plan():
        service = await _load()
        if intents:
            records = json.loads(intents.read_text(encoding="utf-8"))
            requests = service.from_intents(records if isinstance(records, list) else [records])
        else:
            requests = await service.parse(raw)
        await service.shutdown()
        return requests

    requests = _run(_plan())
    if not requests:
        console.print("[yellow]Nothing to send.[/yellow]")
        return

    console.print(_requests_table(requests, "Batch Execution Plan"))
    if not yes:
        typer.confirm(f"Execute {len(requests)} transfer(s)?", abort=True)
    password = console.input("[bold]Wallet password: [/bold]", password=True)

    async def _send():
        service = await _load()
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                console=console,
            ) as progress:
                bar = progress.add_task("Sending...", total=len(requests))

                def _on_progress(agent):
                    progress.update(
                        bar,
                        completed=agent.current_count,
                        description=f"{agent.status.value} {agent.success_count} ok / {agent.failed_count} failed",
                    )

                return await service.run_batch(requests, password, on_progress=_on_progress)
        finally:
            await service.shutdown()

    try:
        agent = _run(_send())
    except CredentialError as e:
        console.print(f"[red]Wallet could not be unlocked: {e}[/red]")
        raise typer.Exit(1)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red] Run 'batch-transfer-agent wallet import' first.")
        raise typer.Exit(1)

    color = "green" if agent.failed_count == 0 else "yellow"
    console.print(Panel(build_report(agent), title=f"[{color}]Batch {agent.id}[/{color}]"))
    if agent.success_count == 0:
        raise typer.Exit(1)


@app.command()
def schedule(
    recipient: str = typer.Argument(help="Address, contact name or @handle"),
    amount: str = typer.Argument(help="Amount to lock"),
    delay: str = typer.Argument("2 minutes", help="Delay, e.g. '5 minutes', '2 hours', '45 sec'"),
):
    """Lock native tokens for a recipient; the scheduler releases them later."""
    from batch_transfer_agent.core.agent import build_report
    from batch_transfer_agent.core.intents import parse_delay
    from batch_transfer_agent.storage.models import IntentType, TransferRequest
    from batch_transfer_agent.wallet.keystore import CredentialError

    delay_seconds = parse_delay(delay)
    password = console.input("[bold]Wallet password: [/bold]", password=True)

    async def _schedule():
        service = await _load()
        try:
            request = TransferRequest(
                recipient_raw=recipient,
                amount=amount,
                token_symbol=service.config.native_token,
                intent=IntentType.SCHEDULE,
                delay_seconds=delay_seconds,
            )
            return await service.run_batch([request], password)
        finally:
            await service.shutdown()

    try:
        agent = _run(_schedule())
    except (CredentialError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    result = agent.results[0]
    if not result.success:
        console.print(f"[red]Scheduling failed: {result.error}[/red]")
        raise typer.Exit(1)
    console.print(Panel(build_report(agent), title=f"Scheduled in {delay_seconds}s"))


# ------------------------------------------------------------------
# desk
# ------------------------------------------------------------------

desk_app = typer.Typer(
    name="desk",
    help="The agent desk: batches, scheduled transfers and bridges.",
    invoke_without_command=True,
)
app.add_typer(desk_app, name="desk")


@desk_app.callback()
def desk_list(ctx: typer.Context):
    """Show the unified task queue (newest first)."""
    if ctx.invoked_subcommand is not None:
        return

    async def _desk():
        service = await _load()
        tasks = await service.desk.list_tasks()
        await service.shutdown()
        return tasks

    tasks = _run(_desk())
    if not tasks:
        console.print("[yellow]The desk is empty.[/yellow]")
        return

    table = Table(title="Agent Desk")
    table.add_column("ID", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("Summary")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("When", style="dim")
    for t in tasks:
        color = _STATUS_COLORS.get(t.status.value, "white")
        status = t.status.value
        if t.native_status != status:
            status = f"{status} ({t.native_status})"
        table.add_row(
            t.id,
            t.kind.value,
            t.summary[:60],
            f"[{color}]{status}[/{color}]",
            f"{t.progress_current}/{t.progress_total}" if t.progress_total else "-",
            t.timestamp.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


def _desk_action(action: str, task_id: str) -> None:
    async def _act():
        service = await _load()
        try:
            await getattr(service.desk, action)(task_id)
        finally:
            await service.shutdown()

    try:
        _run(_act())
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


@desk_app.command("cancel")
def desk_cancel(task_id: str = typer.Argument(help="Task ID")):
    """Cancel a waiting scheduled transfer."""
    _desk_action("cancel", task_id)
    console.print(f"Task [bold]{task_id}[/bold] cancelled.")


@desk_app.command("dismiss")
def desk_dismiss(task_id: str = typer.Argument(help="Task ID")):
    """Hide a task from the desk (it stays in history)."""
    _desk_action("dismiss", task_id)
    console.print(f"Task [bold]{task_id}[/bold] dismissed.")


@desk_app.command("retry")
def desk_retry(task_id: str = typer.Argument(help="Task ID")):
    """Put a failed scheduled transfer back in line for the scheduler."""
    _desk_action("retry", task_id)
    console.print(f"Task [bold]{task_id}[/bold] is waiting again.")


# ------------------------------------------------------------------
# scheduler
# ------------------------------------------------------------------

scheduler_app = typer.Typer(
    name="scheduler",
    help="Execute unlocked time-locked transfers.",
    no_args_is_help=True,
)
app.add_typer(scheduler_app, name="scheduler")


@scheduler_app.command("tick")
def scheduler_tick():
    """Process every due scheduled transfer once."""

    async def _tick():
        service = await _load()
        try:
            return await service.scheduler.tick()
        finally:
            await service.shutdown()

    report = _run(_tick())
    console.print(
        f"Executed [green]{len(report.executed)}[/green], "
        f"rescheduled [yellow]{len(report.rescheduled)}[/yellow], "
        f"failed [red]{len(report.failed)}[/red], "
        f"recovered {len(report.recovered)}"
    )


@scheduler_app.command("run")
def scheduler_run():
    """Keep ticking until interrupted (Ctrl+C)."""

    async def _loop():
        service = await _load()
        try:
            await service.scheduler.run_forever()
        finally:
            await service.shutdown()

    console.print("[bold green]Scheduler running.[/bold green] Press Ctrl+C to stop.")
    try:
        _run(_loop())
    except KeyboardInterrupt:
        console.print("Scheduler stopped.")


# ------------------------------------------------------------------
# contacts / history
# ------------------------------------------------------------------

contacts_app = typer.Typer(name="contacts", help="Manage the address book.", no_args_is_help=True)
app.add_typer(contacts_app, name="contacts")


@contacts_app.command("add")
def contacts_add(
    name: str = typer.Argument(help="Display name"),
    address: str = typer.Argument(help="Wallet address (0x...)"),
    alias: str = typer.Option(None, "--alias", "-a", help="Short handle, e.g. bob"),
    internal_name: str = typer.Option(None, "--internal-name", help="Platform user name"),
    email: str = typer.Option(None, "--email", "-e", help="Account that receives 'funds received' notices"),
):
    """Add a contact."""
    from batch_transfer_agent.core.recipients import is_address
    from batch_transfer_agent.storage.models import Contact

    if not is_address(address):
        console.print(f"[red]'{address}' is not a valid address.[/red]")
        raise typer.Exit(1)

    async def _add():
        service = await _load()
        try:
            return await service.contacts.add(
                Contact(name=name, address=address, alias=alias, internal_name=internal_name, email=email)
            )
        finally:
            await service.shutdown()

    contact = _run(_add())
    console.print(f"Added [cyan]{contact.name}[/cyan] ({contact.address})")


@contacts_app.command("list")
def contacts_list():
    """List contacts."""

    async def _list():
        service = await _load()
        try:
            return await service.contacts.list_contacts()
        finally:
            await service.shutdown()

    contacts = _run(_list())
    if not contacts:
        console.print("[yellow]No contacts yet.[/yellow]")
        return
    table = Table(title="Contacts")
    table.add_column("Name", style="cyan")
    table.add_column("Address")
    table.add_column("Alias")
    table.add_column("Email", style="dim")
    for c in contacts:
        table.add_row(c.name, c.address, c.alias or "-", c.email or "-")
    console.print(table)


@app.command()
def history(limit: int = typer.Option(20, "--limit", "-n", help="Rows to show")):
    """Show recent transfer results."""

    async def _history():
        service = await _load()
        try:
            return await service.store.list_history(service.config.user_id, limit=limit)
        finally:
            await service.shutdown()

    records = _run(_history())
    if not records:
        console.print("[yellow]No transfers yet.[/yellow]")
        return
    table = Table(title="Transfer History")
    table.add_column("When", style="dim")
    table.add_column("Batch", style="dim")
    table.add_column("Recipient")
    table.add_column("Amount", justify="right")
    table.add_column("Result")
    for r in records:
        outcome = f"[green]{r.tx_hash or 'ok'}[/green]" if r.success else f"[red]{r.error}[/red]"
        table.add_row(
            r.created_at.strftime("%Y-%m-%d %H:%M"),
            r.batch_id or "-",
            r.recipient_name or r.recipient or "-",
            f"{r.amount} {r.token}",
            outcome,
        )
    console.print(table)


# ------------------------------------------------------------------
# wallet
# ------------------------------------------------------------------

wallet_app = typer.Typer(
    name="wallet",
    help="Manage the encrypted wallet keystore.",
    no_args_is_help=True,
)
app.add_typer(wallet_app, name="wallet")


@wallet_app.command("import")
def wallet_import():
    """Encrypt a recovery phrase or private key into the profile keystore."""
    from batch_transfer_agent.wallet.keystore import CredentialError, import_wallet

    secret = console.input("[bold]Recovery phrase or private key: [/bold]", password=True)
    password = console.input("[bold]Set wallet password: [/bold]", password=True)
    confirm = console.input("[bold]Confirm password: [/bold]", password=True)
    if password != confirm:
        console.print("[red]Passwords do not match.[/red]")
        raise typer.Exit(1)

    async def _wallet_dir():
        service = await _load()
        await service.shutdown()
        return service.wallet_dir

    wallet_dir = _run(_wallet_dir())
    try:
        address = import_wallet(wallet_dir, secret, password)
    except (FileExistsError, CredentialError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(Panel(
        f"[bold green]Wallet imported![/bold green]\n\n"
        f"Address: [cyan]{address}[/cyan]\n\n"
        f"[dim]The keystore is encrypted with your password. It is only\n"
        f"decrypted for the duration of a batch.[/dim]",
        title="Wallet",
    ))


@wallet_app.command("address")
def wallet_address():
    """Show the wallet address (no password needed)."""
    from batch_transfer_agent.wallet.keystore import load_address

    async def _wallet_dir():
        service = await _load()
        await service.shutdown()
        return service.wallet_dir

    address = load_address(_run(_wallet_dir()))
    if address is None:
        console.print("[yellow]No wallet found.[/yellow] Run 'batch-transfer-agent wallet import' first.")
        raise typer.Exit(1)
    console.print(f"[cyan]{address}[/cyan]")


# ------------------------------------------------------------------
# dashboard
# ------------------------------------------------------------------


@app.command()
def dashboard(
    port: int = typer.Option(8430, "--port", "-p", help="Port to serve on"),
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to"),
):
    """Launch the desk dashboard."""
    from batch_transfer_agent.dashboard.server import run_dashboard

    console.print(f"[bold green]Starting dashboard at http://{host}:{port}[/bold green]")
    run_dashboard(host=host, port=port, profile=_selected_profile)
