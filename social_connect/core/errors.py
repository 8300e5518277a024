from __future__ import annotations


class ConnectError(RuntimeError):
    """Base for every failure the OAuth connection flow surfaces.

    ``code`` is the short, user-safe identifier that may travel to the browser
    (for example in the callback redirect). ``str(err)`` is the operator-facing
    message and stays server-side.
    """

    code: str = "connect_error"
    http_status: int = 500

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def public_message(self) -> str:
        return f"{self.code}: {self}"


class UnknownProvider(ConnectError):
    code = "invalid_provider"
    http_status = 400


class ProviderNotConfigured(ConnectError):
    code = "provider_not_configured"
    http_status = 503


class Forbidden(ConnectError):
    code = "forbidden"
    http_status = 403


class AccountNotFound(ConnectError):
    code = "account_not_found"
    http_status = 404


class UpstreamProviderError(ConnectError):
    """The provider redirected back with an OAuth ``error`` parameter."""

    code = "upstream_error"
    http_status = 400

    def __init__(self, *, provider: str, error: str, description: str | None = None) -> None:
        super().__init__(f"{provider} returned OAuth error {error!r}: {description or 'n/a'}")
        self.provider = provider
        self.error = error
        self.description = description


class MissingParameter(ConnectError):
    code = "missing_parameter"
    http_status = 400


class StateMismatch(ConnectError):
    code = "invalid_state"
    http_status = 400


class ProviderMismatch(ConnectError):
    code = "provider_mismatch"
    http_status = 400


class TokenExchangeFailed(ConnectError):
    """Non-2xx, malformed or timed out provider call.

    ``upstream_message`` is the provider's own error text, kept for diagnostics.
    """

    code = "callback_error"
    http_status = 502

    def __init__(
        self,
        *,
        provider: str,
        upstream_message: str,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(f"{provider} call failed: {upstream_message}")
        self.provider = provider
        self.upstream_message = upstream_message
        self.status_code = status_code
        self.retryable = retryable


class NoAccountsPersisted(ConnectError):
    code = "callback_error"
    http_status = 500


class VaultEntryNotFound(ConnectError):
    code = "token_not_found"
    http_status = 404


class VaultDecryptionError(ConnectError):
    """Stored ciphertext could not be read (corrupt row or rotated key)."""

    code = "token_unreadable"
    http_status = 500


class RefreshNotSupported(ConnectError):
    code = "refresh_not_supported"
    http_status = 501
