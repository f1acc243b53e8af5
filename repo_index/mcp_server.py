import os

from fastmcp import FastMCP

from .config import Settings
from .errors import RepoIndexError
from .models import SearchOptions
from .runtime import Engine, build_engine


def create_mcp(engine: Engine) -> FastMCP:
    mcp = FastMCP(
        name="repo-index-search",
        instructions=(
            "Semantic search over a candidate's indexed repository. "
            "Use index_status to check that a submission is ready, "
            "then search_code to find relevant code chunks by natural language query."
        ),
    )

    @mcp.tool()
    async def search_code(submission_id: str, query: str, top_k: int = 8) -> dict:
        """Search a submission's repository for code chunks relevant to the query.

        Args:
            submission_id: Submission whose repository was indexed.
            query: Natural language search query.
            top_k: Number of nearest chunks to consider (1-15).
        """
        try:
            result = await engine.retriever.search(
                submission_id, query, SearchOptions(top_k=top_k)
            )
        except RepoIndexError as e:
            raise ValueError(str(e)) from e

        return {
            "chunks": [
                {
                    "path": c.path,
                    "start_line": c.start_line,
                    "end_line": c.end_line,
                    "language": c.language,
                    "score": round(c.score, 4),
                    "content": c.content,
                }
                for c in result.chunks
            ],
            "stats": result.stats.model_dump(),
        }

    @mcp.tool()
    async def index_status(submission_id: str) -> dict:
        """Report the indexing status of a submission's most recent revision."""
        try:
            record = await engine.indexing.get_index_status(submission_id)
        except RepoIndexError as e:
            raise ValueError(str(e)) from e

        return {
            "submission_id": record.submission_id,
            "repo": str(record.repo),
            "pinned_revision": record.repo.pinned_revision,
            "status": record.status.value,
            "stats": record.stats.model_dump(),
            "error": record.error.message if record.error else None,
            "updated_at": record.updated_at.isoformat(),
        }

    return mcp


def main() -> None:
    mcp = create_mcp(build_engine(Settings.from_env()))

    transport = os.environ.get("MCP_TRANSPORT", "stdio")
    kwargs = {}
    if transport != "stdio":
        kwargs["host"] = os.environ.get("MCP_HOST", "0.0.0.0")
        kwargs["port"] = int(os.environ.get("MCP_PORT", "8080"))
    mcp.run(transport=transport, **kwargs)


if __name__ == "__main__":
    main()
