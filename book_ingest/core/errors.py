from __future__ import annotations

from typing import Optional


class IngestError(RuntimeError):
    pass


class TransportError(IngestError):
    """Network failure, timeout or a retryable (5xx) status from a provider."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(TransportError):
    def __init__(self, message: str, retry_after_s: Optional[float] = None, status_code: int = 429) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after_s = float(retry_after_s) if retry_after_s is not None else None


class ContentInvalidError(IngestError):
    pass


class AssetExistsError(IngestError):
    def __init__(self, path: str) -> None:
        super().__init__(f"asset already exists at {path}")
        self.path = path


class DuplicateRecordError(IngestError):
    def __init__(self, source: str, source_identifier: str) -> None:
        super().__init__(f"record already exists: {source}/{source_identifier}")
        self.source = source
        self.source_identifier = source_identifier


class PersistenceError(IngestError):
    pass


class ConfigError(IngestError):
    pass


class FetcherContractError(IngestError):
    pass


class JobNotResumableError(IngestError):
    pass


class HttpStatusError(IngestError):
    """Non-retryable HTTP status (4xx other than 429)."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code
