import asyncio
from contextlib import asynccontextmanager
import logging

import aiohttp
import cachetools
import typer

from cerberus import __version__, config
from cerberus.aggregator import CheckAggregator, CommitKey, compute_decision
from cerberus.aggregator.decision import render_checks_table, split_check_runs
from cerberus.errors import CerberusError
from cerberus.logger import configure_logging
from cerberus.web import create_app, make_aggregator, make_github_client

logger = logging.getLogger("cerberus")

app = typer.Typer()
httpcache = cachetools.LRUCache(maxsize=500)


@app.callback()
def init():
    configure_logging()


@asynccontextmanager
async def local_aggregator():
    """An aggregator that pushes immediately, for one-shot commands."""
    config.validate()
    async with aiohttp.ClientSession() as session:
        api = make_github_client(session, cache=httpcache)
        aggregator = make_aggregator(api, refresh_interval=0, eviction_interval=0)
        try:
            yield aggregator
        finally:
            await aggregator.shutdown(config.SHUTDOWN_DRAIN_TIMEOUT)


def run(coro) -> None:
    try:
        asyncio.run(coro)
    except CerberusError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)


@app.command()
def server(
    host: str = typer.Option(config.HOST, help="Address to bind"),
    port: int = typer.Option(config.PORT, help="Port to listen on"),
):
    """Run the webhook server."""
    web_app = create_app()
    ssl = None
    if config.SSL_CERT and config.SSL_KEY:
        ssl = {"cert": config.SSL_CERT, "key": config.SSL_KEY}
    logger.info("Listening on %s:%d", host, port)
    web_app.run(host=host, port=port, ssl=ssl, single_process=True, access_log=False)


@app.command()
def create(installation: int, repo: str, commit: str):
    """Create the guard check run on a commit if it has none yet."""

    async def handle():
        async with local_aggregator() as aggregator:
            await _wait(await aggregator.ensure_guard(installation, repo, commit))
            entry = _entry(aggregator, repo, commit)
            typer.echo(f"Guard check run: {entry.guard.id} ({entry.guard.status})")

    run(handle())


@app.command()
def refresh(installation: int, repo: str, commit: str):
    """Re-evaluate a commit's check runs and update the guard."""

    async def handle():
        async with local_aggregator() as aggregator:
            decision = await _wait(await aggregator.refresh(installation, repo, commit))
            entry = _entry(aggregator, repo, commit)
            typer.echo(f"{decision.value}: {entry.guard.title}")

    run(handle())


@app.command()
def status(installation: int, repo: str, commit: str):
    """Show the check runs on a commit and what the guard would report."""

    async def handle():
        async with local_aggregator() as aggregator:
            token = await aggregator.tokens.get_token(installation)
            check_runs = await aggregator.api.list_check_runs(token, repo, commit)
            records, guard = split_check_runs(check_runs, config.GITHUB_CLIENT_ID)
            typer.echo(render_checks_table(records.values()))
            typer.echo("")
            typer.echo(f"Decision: {compute_decision(records.values()).value}")
            if guard is None:
                typer.echo("Guard: none")
            else:
                typer.echo(
                    f"Guard: {guard.id} {guard.status}/{guard.conclusion or '-'}"
                )

    run(handle())


@app.command()
def version():
    typer.echo(__version__)


async def _wait(future):
    if future is None:
        raise CerberusError("Aggregator is shutting down")
    return await future


def _entry(aggregator: CheckAggregator, repo: str, commit: str):
    return aggregator.get_entry(CommitKey(repo, commit))
