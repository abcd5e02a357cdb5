from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures the sync pipeline knows how to classify."""

    def __init__(self, reason: str, detail: str | None = None) -> None:
        self.reason = reason
        self.detail = detail
        message = f"{reason}: {detail}" if detail else reason
        super().__init__(message)


class FetchError(PipelineError):
    def __init__(self, url: str, detail: str, status: int | None = None) -> None:
        self.url = url
        self.status = status
        super().__init__("fetch_failed", f"{url} {detail}")


class SourceFetchError(PipelineError):
    pass


class ParseError(PipelineError):
    pass


class ScrapeError(PipelineError):
    pass


class EnrichmentRejected(PipelineError):
    pass


class UploadError(PipelineError):
    pass


class DuplicateDetected(PipelineError):
    """Raised when an article matches a stored one; a skip, not a failure."""


class PersistenceError(PipelineError):
    pass
