import asyncio
import contextlib
import typing as t
from datetime import datetime
from typing import Annotated

import typer
from rich import print
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from batchrelay.app import Application
from batchrelay.capacity.limits import delete_override, list_overrides, set_override
from batchrelay.db import crud
from batchrelay.db.session import Database
from batchrelay.settings import Settings
from batchrelay.status import BatchState

app = typer.Typer(no_args_is_help=True)
batches_app = typer.Typer(no_args_is_help=True, help="Inspect and manage batches")
requests_app = typer.Typer(no_args_is_help=True, help="Inspect and redeliver requests")
overrides_app = typer.Typer(no_args_is_help=True, help="Manage model capacity overrides")
app.add_typer(batches_app, name="batches")
app.add_typer(requests_app, name="requests")
app.add_typer(overrides_app, name="overrides")


def _format_datetime(value: datetime | None) -> str:
    return datetime.strftime(value, "%Y-%m-%d %H:%M:%S") if value else "-"


def _database() -> Database:
    database = Database(Settings.from_env().database_url)
    database.init_db()
    return database


def _run_with_application(action: t.Callable[[Application], t.Awaitable[t.Any]]) -> t.Any:
    async def runner() -> t.Any:
        application = Application(configure_logging=False)
        try:
            return await action(application)
        finally:
            await application.stop()

    return asyncio.run(runner())


def state_callback(ctx: typer.Context, value: list[str] | None):
    if ctx.resilient_parsing or not value:
        return value
    for state in value:
        if state not in BatchState.__members__.values():
            raise typer.BadParameter(
                message=f"'{state}' is not a valid batch state, supported states are: {', '.join(BatchState)}",
                param_hint="--state, -s",
            )
    return value


@app.command()
def serve(
    skip_credential_check: Annotated[
        bool, typer.Option(help="Start without validating the provider API key")
    ] = False,
):
    """Run the job workers and periodic sweeps until interrupted"""

    async def run() -> None:
        application = Application()
        try:
            await application.start(validate_credentials=not skip_credential_check)
            await asyncio.Event().wait()
        finally:
            await application.stop()

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run())


@batches_app.command(name="list")
def list_batches(
    state: Annotated[
        list[str] | None,
        typer.Option("-s", "--state", help="Only list batches in this state", callback=state_callback),
    ] = None,
    model: Annotated[str | None, typer.Option("-m", "--model", help="Only list batches for this model")] = None,
    limit: Annotated[int, typer.Option("-l", "--limit", help="The maximum number of batches")] = 50,
):
    """List batches, newest first"""
    table = Table(
        "ID",
        "Endpoint",
        "Model",
        "State",
        "Requests",
        "Est. Tokens",
        "Remote Job",
        "Opened At",
        "Updated At",
        title="Batches",
    )
    with _database().session() as session:
        batches = crud.list_batches(
            session,
            states=[BatchState(s) for s in state] if state else None,
            model=model,
            limit=limit,
        )
        for batch in batches:
            table.add_row(
                str(batch.id),
                batch.endpoint,
                batch.model,
                str(batch.state),
                str(batch.request_count),
                str(batch.estimated_token_total),
                batch.remote_job_id or "-",
                _format_datetime(batch.opened_at),
                _format_datetime(batch.updated_at),
            )
    console = Console()
    console.print(table)


@batches_app.command(name="show")
def show_batch(batch_id: Annotated[int, typer.Argument(help="The id of the batch")]):
    """Show a batch and its request counts"""
    with _database().session() as session:
        batch = crud.get_batch(session, batch_id)
        if batch is None:
            typer.echo(f"Batch with id: {batch_id} not found")
            raise typer.Exit(1)
        counts = crud.request_state_counts(session, batch_id)
        batch_dict = {
            "Endpoint": batch.endpoint,
            "Model": batch.model,
            "State": f"[green]{batch.state}[/green]",
            "Requests": ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "-",
            "Estimated Tokens": batch.estimated_token_total,
            "Remote Job ID": batch.remote_job_id,
            "Input File ID": batch.remote_input_file_id,
            "Output File ID": batch.remote_output_file_id,
            "Error File ID": batch.remote_error_file_id,
            "Capacity Wait": batch.capacity_wait_reason,
            "Error": batch.error_message,
            "Expires At": _format_datetime(batch.expires_at),
            "Opened At": _format_datetime(batch.opened_at),
            "Updated At": _format_datetime(batch.updated_at),
        }
    values = "\n".join(f"{key}: {value}" for key, value in batch_dict.items() if value is not None)
    console = Console()
    console.print(Panel(values, title=f"Batch {batch_id}", expand=False, highlight=True))


@batches_app.command(name="cancel")
def cancel_batch(batch_id: Annotated[int, typer.Argument(help="The id of the batch")]):
    """Cancel a batch and its unfinished requests"""
    cancelled = _run_with_application(lambda a: a.orchestrator.cancel_batch(batch_id))
    if not cancelled:
        typer.echo(f"Batch with id: {batch_id} not found or already finished")
        raise typer.Exit(1)
    print(f"Batch [green]{batch_id}[/green] cancelled")


@batches_app.command(name="destroy")
def destroy_batch(
    batch_id: Annotated[int, typer.Argument(help="The id of the batch")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
):
    """Delete a batch with its requests and remote files"""
    if not yes:
        typer.confirm(f"Delete batch {batch_id} and all of its requests?", abort=True)
    destroyed = _run_with_application(lambda a: a.orchestrator.destroy_batch(batch_id))
    if not destroyed:
        typer.echo(f"Batch with id: {batch_id} not found")
        raise typer.Exit(1)
    print(f"Batch [green]{batch_id}[/green] deleted")


@batches_app.command(name="redeliver")
def redeliver_batch(batch_id: Annotated[int, typer.Argument(help="The id of the batch")]):
    """Queue redelivery of every request whose delivery failed"""

    async def action(application: Application) -> int:
        return application.orchestrator.redeliver_failed(batch_id)

    count = _run_with_application(action)
    print(f"Queued [green]{count}[/green] redeliveries for batch {batch_id}")


@requests_app.command(name="show")
def show_request(custom_id: Annotated[str, typer.Argument(help="The custom id of the request")]):
    """Show a request and its delivery attempts"""
    with _database().session() as session:
        request = crud.get_request_by_custom_id(session, custom_id)
        if request is None:
            typer.echo(f"Request with custom id: {custom_id} not found")
            raise typer.Exit(1)
        request_dict = {
            "ID": request.id,
            "Batch ID": request.batch_id,
            "Endpoint": request.endpoint,
            "Model": request.model,
            "State": f"[green]{request.state}[/green]",
            "Estimated Tokens": request.estimated_tokens,
            "Delivery": request.delivery_config.get("type"),
            "Tag": request.tag,
            "Error": request.error_message,
            "Created At": _format_datetime(request.created_at),
            "Updated At": _format_datetime(request.updated_at),
        }
        attempts = crud.delivery_attempts(session, request.id)
        table = Table("#", "Outcome", "Error", "Attempted At", title="Delivery attempts")
        for attempt in attempts:
            table.add_row(
                str(attempt.attempt_number),
                str(attempt.outcome),
                attempt.error_message or "-",
                _format_datetime(attempt.attempted_at),
            )
    values = "\n".join(f"{key}: {value}" for key, value in request_dict.items() if value is not None)
    console = Console()
    console.print(Panel(values, title=custom_id, expand=False, highlight=True))
    if attempts:
        console.print(table)


@requests_app.command(name="redeliver")
def redeliver_request(custom_id: Annotated[str, typer.Argument(help="The custom id of the request")]):
    """Queue another delivery of a finished request"""
    with _database().session() as session:
        request = crud.get_request_by_custom_id(session, custom_id)
        if request is None:
            typer.echo(f"Request with custom id: {custom_id} not found")
            raise typer.Exit(1)
        request_id = request.id

    async def action(application: Application) -> bool:
        return application.orchestrator.redeliver(request_id)

    if not _run_with_application(action):
        typer.echo(f"Request {custom_id} cannot be redelivered in its current state")
        raise typer.Exit(1)
    print(f"Request [green]{custom_id}[/green] queued for redelivery")


@overrides_app.command(name="list")
def list_capacity_overrides():
    """List model capacity overrides"""
    table = Table("Model Prefix", "Token Limit", "Updated At", title="Capacity overrides")
    with _database().session() as session:
        for override in list_overrides(session):
            table.add_row(
                override.model_prefix,
                f"{override.token_limit:,}",
                _format_datetime(override.updated_at),
            )
    console = Console()
    console.print(table)


@overrides_app.command(name="set")
def set_capacity_override(
    model_prefix: Annotated[str, typer.Argument(help="Model name prefix, e.g. gpt-4o-mini")],
    token_limit: Annotated[int, typer.Argument(help="Enqueued token budget for matching models")],
):
    """Create or update a model capacity override"""
    with _database().session() as session:
        try:
            override = set_override(session, model_prefix, token_limit)
        except ValueError as e:
            raise typer.BadParameter(str(e)) from e
        print(f"Override [green]{override.model_prefix}[/green] = {override.token_limit:,} tokens")


@overrides_app.command(name="delete")
def delete_capacity_override(
    model_prefix: Annotated[str, typer.Argument(help="Model name prefix")],
):
    """Delete a model capacity override"""
    with _database().session() as session:
        if not delete_override(session, model_prefix):
            typer.echo(f"No override for prefix: {model_prefix}")
            raise typer.Exit(1)
    print(f"Override [green]{model_prefix}[/green] deleted")
