"""Custom exception classes shared by drivers and pipelines."""

from typing import List, Optional


class CartStoreError(Exception):
    """
    Base exception class for all cartridge storage errors.
    """
    pass


class TransientError(CartStoreError):
    """
    Raised when a backend call fails for a reason worth retrying
    (timeout, connection error, HTTP 5xx or 429).
    """
    pass


class RpcError(CartStoreError):
    """
    Raised when a JSON-RPC endpoint answers with an error object.
    """

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        super().__init__(f"{method} failed: {message}" + (f" (code {code})" if code is not None else ""))
        self.method = method
        self.code = code


class MalformedRecordError(CartStoreError):
    """
    Raised when a strict decode is requested for bytes that are not a valid record.
    """
    pass


class NotAuthorizedError(CartStoreError):
    """
    Raised when the writer identity is unknown to the backend.
    """
    pass


class WriterLockedError(NotAuthorizedError):
    """
    Raised when the writer identity exists but is locked.
    """
    pass


class UnavailableError(CartStoreError):
    """
    Raised when the backend is not ready to accept writes (e.g. no consensus).
    """
    pass


class IntegrityFailureError(CartStoreError):
    """
    Raised when reconstructed data does not match the header checksum.
    """

    def __init__(self, expected: str, actual: str):
        super().__init__(f"Checksum mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class IncompleteUploadError(CartStoreError):
    """
    Raised when a cartridge is not (yet) fully present on the ledger.
    """
    pass


class HeaderNotFoundError(IncompleteUploadError):
    """
    Raised when no header record is found at a cartridge address.
    """
    pass


class MissingChunksError(IncompleteUploadError):
    """
    Raised when fewer chunks than the header announces could be collected.
    """

    def __init__(self, expected: int, found: int, missing: List[int]):
        preview = ", ".join(str(i) for i in missing[:10])
        if len(missing) > 10:
            preview += ", ..."
        super().__init__(f"Expected {expected} chunks, found {found} (missing: {preview})")
        self.expected = expected
        self.found = found
        self.missing = missing


class OperationCancelledError(CartStoreError):
    """
    Raised when a cancellation token is observed at a wait point.
    """
    pass
