class RepoIndexError(Exception):
    """Base class for every error raised by the indexing engine."""


class FetchError(RepoIndexError):
    """The repository archive could not be fetched or read."""


class NotFoundError(FetchError):
    """Repository or revision is missing or not public. Never retried."""


class RateLimitedError(FetchError):
    """The repository host refused the request (403/429).

    Surfaced as-is so callers can decide on a backoff; the engine does not retry.
    """

    def __init__(self, message: str, remaining: str | None = None, reset: str | None = None) -> None:
        super().__init__(message)
        self.remaining = remaining
        self.reset = reset


class SizeLimitExceededError(RepoIndexError):
    """A download or extraction went past a hard byte ceiling."""


class PathSecurityError(RepoIndexError):
    """An archive entry would escape the extraction directory."""

    def __init__(self, entry_name: str) -> None:
        super().__init__(
            f"Zip slip detected: entry {entry_name!r} would extract outside target directory"
        )
        self.entry_name = entry_name


class EmbeddingError(RepoIndexError):
    """The embedding service returned an unusable response."""


class InvalidRepoReferenceError(RepoIndexError, ValueError):
    pass


class IndexNotReadyError(RepoIndexError):
    """The submission has no searchable index yet."""


class IndexMissingError(IndexNotReadyError):
    def __init__(self, submission_id: str) -> None:
        super().__init__(f"Repo not indexed yet: no index for submission {submission_id}")
        self.submission_id = submission_id


class IndexInProgressError(IndexNotReadyError):
    def __init__(self, submission_id: str, status: str) -> None:
        super().__init__(f"Repo indexing in progress (status: {status})")
        self.submission_id = submission_id
        self.status = status


class IndexFailedError(RepoIndexError):
    # Stored failure detail is only exposed through status queries.
    def __init__(self, submission_id: str) -> None:
        super().__init__("Repo not indexed yet")
        self.submission_id = submission_id


class EmptyQueryError(RepoIndexError, ValueError):
    def __init__(self) -> None:
        super().__init__("query is required and cannot be empty")
