class QuotawatchError(Exception):
    """
    base class for every error raised by quotawatch.
    """


class SourceError(QuotawatchError):
    """
    SourceError is a transient failure of a single source. It is
    recorded as a diagnostic and never fails the overall fetch.
    """


class AuthenticationFailed(SourceError):
    """
    raised by a source when the upstream rejected its credentials.
    """


class RateLimited(SourceError):
    """
    raised by a source when the upstream answered with a
    rate-limit signal (HTTP 429 or equivalent).
    """

    def __init__(self, message: "str", retry_after: "float | None" = None) -> "None":
        super().__init__(message)
        self.retry_after = retry_after


class ToolUnavailable(SourceError):
    """
    raised by a source when the tooling it depends on (a binary,
    an endpoint, a data directory) does not exist at all.
    """


class FetchError(QuotawatchError):
    """
    FetchError means no Snapshot could be produced. Unlike a
    Snapshot with status ERROR, the caller has to fix something
    before retrying.
    """


class AccountConfigError(FetchError):
    pass


class RequiredSourceError(FetchError):
    def __init__(self, source: "str", cause: "BaseException | None" = None) -> "None":
        super().__init__(f"required source {source!r} unavailable and no fallback exists")
        self.source = source
        self.__cause__ = cause


class SnapshotFinalizedError(QuotawatchError):
    """
    raised when something tries to mutate a finalized Snapshot.
    """
