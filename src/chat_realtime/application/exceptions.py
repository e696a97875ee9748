from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    retryable: bool = False

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class TransportFailure(AppError):
    """Socket or handshake failure; recovered by the reconnect loop."""

    retryable = True


class AuthFailure(AppError):
    """Expired or rejected credentials; never retried automatically."""


class ProtocolError(AppError):
    """Malformed broker frame or payload."""


class ValidationError(AppError):
    """Request rejected before any network call."""


class DuplicateSend(AppError):
    pass


class UploadTimeout(AppError):
    retryable = True


class UploadFailed(AppError):
    """The broker reported an error for an upload."""


class UploadCancelled(AppError):
    pass
