"""
errors.py — Exception taxonomy for Travel Bingo.

Generation errors are raised by generation_client.py and caught per item by
batch_runner.py; they never reach the caller of a batch.
Storage errors are raised inside photo_store.py / client_identity.py; only
StorageUnavailable escapes, and only from PhotoStore.open().
"""


class TravelBingoError(Exception):
    """Base class for every error raised by this project."""


# ── Generation ────────────────────────────────────────────────────────────────

class GenerationError(TravelBingoError):
    """One generate-one-item call failed."""


class NetworkError(GenerationError):
    """Transport failure or non-2xx status from the generation backend."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class MalformedResponse(GenerationError):
    """The response body could not be parsed as the expected structure."""


class ApplicationError(GenerationError):
    """Well-formed response that reports failure (success: false)."""

    def __init__(self, message: str, in_progress: bool = False):
        super().__init__(message)
        self.in_progress = in_progress


class MissingResultField(ApplicationError):
    """success: true, but the expected result field is missing or empty."""

    def __init__(self, field: str):
        super().__init__(f'Response reported success but contained no {field!r}')
        self.field = field


# ── Storage ───────────────────────────────────────────────────────────────────

class StorageError(TravelBingoError):
    """Local storage failure."""


class StorageUnavailable(StorageError):
    """No persistent local storage could be opened."""


class StorageOperationFailed(StorageError):
    """A specific read, write or delete against local storage failed."""
