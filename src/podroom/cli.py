"""
Podroom CLI
Command-line interface for common operations.
"""

import asyncio
import json
import logging
import sys

import click

from . import __version__
from .errors import PodroomError


def _service():
    from .service import PodroomService

    return PodroomService.from_settings()


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool):
    """Podroom - podcast processing and cross-episode QA"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", "-p", type=int, default=None, help="API server port")
def serve(host: str, port: int):
    """Start the API server and its workers."""
    import uvicorn

    from .config import settings

    settings.ensure_directories()
    host = host or settings.api_host
    port = port or settings.api_port
    click.echo(f"Starting Podroom API on {host}:{port}")
    uvicorn.run("podroom.main:app", host=host, port=port)


@cli.command()
@click.argument("url")
@click.option("--title", "-t", help="Episode title")
def submit(url: str, title: str):
    """Queue an episode URL for processing by a running server's workers."""
    try:
        task_id = _service().submit(url, title=title)
    except PodroomError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(task_id)


@cli.command()
@click.argument("task_id")
def status(task_id: str):
    """Show one task."""
    task = _service().queue.get_task_status(task_id)
    if task is None:
        click.echo("Task not found", err=True)
        sys.exit(1)
    click.echo(json.dumps(task.model_dump(mode="json"), indent=2, ensure_ascii=False))


@cli.command()
def queue():
    """Show queue counts."""
    summary = _service().queue.get_queue_status()
    click.echo(f"Pending:   {summary.pending}")
    click.echo(f"Running:   {summary.running}")
    click.echo(f"Completed: {summary.completed}")
    click.echo(f"Failed:    {summary.failed}")
    click.echo(f"Workers:   {summary.max_concurrent}")


@cli.command()
@click.argument("url")
@click.option("--title", "-t", help="Episode title")
def process(url: str, title: str):
    """Process an episode URL in this process and wait for the result."""
    service = _service()
    try:
        task_id = service.submit(url, title=title)
    except PodroomError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    asyncio.run(service.queue.run_until_idle())

    task = service.queue.get_task_status(task_id)
    if task.status.value == "READY":
        click.echo(f"Done: episode {task.result['episode_id']}")
        click.echo(json.dumps(task.metrics, indent=2, ensure_ascii=False))
    else:
        click.echo(f"Failed: {task.error}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("question")
@click.option("--limit", "-k", type=int, default=None, help="Chunks to retrieve (1-8)")
@click.option("--episode", "-e", "episode_id", default=None, help="Restrict to one episode")
def ask(question: str, limit: int, episode_id: str):
    """Ask a question across indexed episodes."""
    service = _service()

    async def run():
        answer = await service.answer(question, limit=limit, episode_id=episode_id)
        await service.events.drain()
        return answer

    try:
        answer = asyncio.run(run())
    except PodroomError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(answer.answer)
    for citation in answer.citations:
        title = citation.episode_title or citation.episode_id
        click.echo(f"  [{title} {citation.time_range}]")


@cli.command()
@click.argument("episode_id")
def check(episode_id: str):
    """Report missing artifacts for an episode."""
    report = _service().check_episode_consistency(episode_id)
    if report.consistent:
        click.echo("OK")
        return
    for issue in report.issues:
        click.echo(f"- {issue}")
    sys.exit(1)


if __name__ == "__main__":
    cli()
