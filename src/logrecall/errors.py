"""Exception hierarchy for logrecall."""


class LogrecallError(Exception):
    """Base class for all logrecall errors."""

    exit_code = 1


class ConfigError(LogrecallError):
    """Bad index root or config.toml."""

    exit_code = 2


class IngestError(LogrecallError):
    """A single log line could not be turned into records."""


class IndexCorruption(LogrecallError):
    """The index database is unreadable or inconsistent."""

    exit_code = 3

    def __init__(self, detail: str) -> None:
        super().__init__(f"{detail}. Run 'logrecall index --rebuild' to rebuild the index.")
        self.detail = detail


class NotIndexed(LogrecallError):
    """No index has been built yet under the root."""

    exit_code = 3


class EmbeddingUnavailable(LogrecallError):
    """The embedder failed or is disabled."""


class QueryError(LogrecallError):
    """Invalid query, filter or flag combination."""

    exit_code = 4


class NotFound(LogrecallError):
    """A requested record or session does not exist in the active generation."""

    exit_code = 4


class LockTimeout(LogrecallError):
    """Another writer holds the index lock."""

    exit_code = 5


class SyncCancelled(LogrecallError):
    """A sync was cancelled or ran out of time before committing."""

    exit_code = 6
