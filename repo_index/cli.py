import asyncio
import json
import logging

import click

from .config import Settings
from .errors import RepoIndexError
from .models import IndexStatus, SearchOptions
from .runtime import Engine, build_engine


def _engine() -> Engine:
    try:
        return build_engine(Settings.from_env())
    except RuntimeError as e:
        raise click.ClickException(str(e))


def _run(coro_fn):
    """Build an engine, run coro_fn(engine) to completion and close every client."""
    engine = _engine()

    async def runner():
        try:
            return await coro_fn(engine)
        finally:
            await engine.aclose()

    try:
        return asyncio.run(runner())
    except RepoIndexError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Index public GitHub repositories and search them by meaning."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.argument("repo_url")
@click.option("--submission-id", required=True, help="Submission that owns the index.")
def index(repo_url: str, submission_id: str) -> None:
    """Pin REPO_URL to a commit and index it for SUBMISSION_ID."""

    async def go(engine: Engine):
        resolved = await engine.resolver.resolve(repo_url)
        click.echo(f"Pinned {resolved.ref_type} '{resolved.ref}' to {resolved.reference.pinned_revision}")
        return await engine.indexing.start_indexing(submission_id, resolved.reference)

    result = _run(go)
    if result.status == IndexStatus.FAILED:
        raise click.ClickException(f"Indexing failed: {result.error}")
    click.echo(
        f"Done. Status {result.status.value}: "
        f"{result.chunk_count or 0} chunks from {result.file_count or 0} files."
    )


@cli.command()
@click.argument("submission_id")
@click.option("--revision", default=None, help="Full commit hash. Defaults to the latest indexed revision.")
def status(submission_id: str, revision: str | None) -> None:
    """Show the index status record of SUBMISSION_ID."""

    async def go(engine: Engine):
        return await engine.indexing.get_index_status(submission_id, revision)

    record = _run(go)
    click.echo(record.model_dump_json(indent=2, exclude={"error": {"stack"}}))


@cli.command()
@click.argument("submission_id")
@click.argument("query")
@click.option("--top-k", type=int, default=None, help="Nearest chunks to consider (max 15).")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the raw result as JSON.")
def search(submission_id: str, query: str, top_k: int | None, as_json: bool) -> None:
    """Search the indexed repository of SUBMISSION_ID for QUERY."""

    async def go(engine: Engine):
        return await engine.retriever.search(submission_id, query, SearchOptions(top_k=top_k))

    result = _run(go)
    if as_json:
        click.echo(json.dumps(result.model_dump(), indent=2))
        return

    for chunk in result.chunks:
        click.echo(f"--- {chunk.path}:{chunk.start_line}-{chunk.end_line} (score {chunk.score:.4f})")
        click.echo(chunk.content)
    click.echo(
        f"{result.stats.returned_chunks} chunks, {result.stats.total_chars_returned} chars "
        f"(top_k={result.stats.requested_top_k})"
    )


@cli.command()
def serve() -> None:
    """Run the restate indexing service under hypercorn."""
    from .service import main

    try:
        main()
    except RuntimeError as e:
        raise click.ClickException(str(e))


@cli.command()
def mcp() -> None:
    """Run the code search MCP server."""
    from .mcp_server import main

    try:
        main()
    except RuntimeError as e:
        raise click.ClickException(str(e))


if __name__ == "__main__":
    cli()
