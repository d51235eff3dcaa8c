from __future__ import annotations


class PlatformError(Exception):
    """Base class for errors surfaced through the API as structured bodies."""

    error_code = "platform_error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.error_code)
        self.message = message or self.error_code


class TenantMismatch(PlatformError):
    error_code = "tenant_mismatch"
    status_code = 403

    def __init__(self, message: str = "Resource belongs to another tenant") -> None:
        super().__init__(message)


class NotFound(PlatformError):
    error_code = "not_found"
    status_code = 404


class Conflict(PlatformError):
    error_code = "conflict"
    status_code = 409


class QuotaExceeded(PlatformError):
    error_code = "quota_exceeded"
    status_code = 429


class PairingExpired(PlatformError):
    error_code = "pairing_expired"
    status_code = 410


class AuthFailed(PlatformError):
    """Channel credential rejected by the external network."""

    error_code = "auth_failed"
    status_code = 401


class ChannelTransportError(PlatformError):
    """Retryable failure talking to the external network."""

    error_code = "channel_transport_error"
    status_code = 502


class ChannelUnavailable(PlatformError):
    error_code = "channel_unavailable"
    status_code = 409


class DataError(PlatformError):
    """Malformed dataset input or aggregation over non-numeric data."""

    error_code = "data_error"
    status_code = 400
