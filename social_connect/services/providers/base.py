from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar
from urllib.parse import urlencode

import httpx

from social_connect.core.errors import TokenExchangeFailed
from social_connect.core.middleware import log_json
from social_connect.models.enums import OAuthProvider, ResourceKind

logger = logging.getLogger("social_connect.providers")

_MAX_UPSTREAM_MESSAGE = 300


@dataclass(frozen=True)
class TokenSet:
    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_in: int | None = None
    scope: str | None = None

    def expires_at(self, *, now: datetime | None = None) -> datetime | None:
        # Always relative to the moment of exchange; providers' absolute timestamps are ignored.
        if self.expires_in is None:
            return None
        base = now or datetime.now(UTC)
        return base + timedelta(seconds=self.expires_in)


@dataclass(frozen=True)
class ProviderIdentity:
    provider_user_id: str
    display_name: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubAccount:
    id: str
    name: str | None
    kind: ResourceKind
    # Page-style providers hand out a per-resource token alongside the listing.
    access_token: str | None = field(default=None, repr=False)
    metadata: dict[str, Any] = field(default_factory=dict)


class ProviderAdapter:
    """Provider-specific OAuth endpoints and API calls behind one contract.

    Subclasses set the class attributes and implement ``exchange_code``,
    ``refresh``, ``fetch_identity`` and ``fetch_sub_accounts``. Every network
    call goes through ``_request`` so failures surface uniformly as
    ``TokenExchangeFailed``.
    """

    provider: ClassVar[OAuthProvider]
    display_name: ClassVar[str]
    authorization_endpoint: str
    default_scopes: ClassVar[tuple[str, ...]]
    scope_separator: ClassVar[str] = " "
    uses_pkce: ClassVar[bool] = True
    supports_refresh_token: ClassVar[bool] = True
    multi_account: ClassVar[bool] = False
    fallback_note: ClassVar[str] = "No resources found during initial setup"
    extra_authorize_params: ClassVar[dict[str, str]] = {}

    def __init__(self, *, client_id: str, client_secret: str) -> None:
        self.client_id = client_id
        self.client_secret = client_secret

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def build_authorization_url(
        self,
        *,
        state: str,
        redirect_uri: str,
        code_challenge: str | None = None,
    ) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "response_type": "code",
            "scope": self.scope_separator.join(self.default_scopes),
        }
        params.update(self.extra_authorize_params)
        if self.uses_pkce:
            if not code_challenge:
                raise ValueError(f"{self.provider} requires a PKCE code challenge")
            params["code_challenge_method"] = "S256"
            params["code_challenge"] = code_challenge
        return f"{self.authorization_endpoint}?{urlencode(params)}"

    def exchange_code(
        self,
        client: httpx.Client,
        *,
        code: str,
        code_verifier: str | None,
        redirect_uri: str,
    ) -> TokenSet:
        raise NotImplementedError

    def refresh(
        self,
        client: httpx.Client,
        *,
        refresh_token: str,
        provider_user_id: str,
    ) -> TokenSet:
        raise NotImplementedError

    def fetch_identity(self, client: httpx.Client, *, access_token: str) -> ProviderIdentity:
        raise NotImplementedError

    def fetch_sub_accounts(
        self,
        client: httpx.Client,
        *,
        access_token: str,
        identity: ProviderIdentity | None = None,
    ) -> list[SubAccount]:
        raise NotImplementedError

    def revoke(self, client: httpx.Client, *, access_token: str) -> bool:
        return False

    def credentials_for(self, tokens: TokenSet, sub_account: SubAccount | None) -> TokenSet:
        """Tokens to vault for one resolved account.

        ``sub_account`` is None for single-account providers and for the
        fallback identity of a multi-account provider.
        """
        return tokens

    def sync_token(self, *, access_token: str, refresh_token: str | None) -> str:
        """Token used to enumerate resources from an already-stored account."""
        return access_token

    # -- HTTP plumbing -----------------------------------------------------

    def _fail(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> TokenExchangeFailed:
        return TokenExchangeFailed(
            provider=self.provider.value,
            upstream_message=message[:_MAX_UPSTREAM_MESSAGE],
            status_code=status_code,
            retryable=retryable,
        )

    def _request(
        self,
        client: httpx.Client,
        method: str,
        url: str | httpx.URL,
        *,
        what: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            res = client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise self._fail(f"{what} timed out", retryable=True) from exc
        except httpx.TransportError as exc:
            raise self._fail(f"{what} transport error: {type(exc).__name__}") from exc

        if res.status_code >= 400:
            raise self._fail(
                f"{what} failed: {_upstream_error_text(res)}",
                status_code=res.status_code,
                retryable=res.status_code >= 500,
            )

        try:
            payload = res.json()
        except ValueError as exc:
            raise self._fail(f"{what} returned malformed JSON", status_code=res.status_code) from exc
        if not isinstance(payload, dict):
            raise self._fail(f"{what} returned an unexpected payload", status_code=res.status_code)
        return payload

    def _revoke_best_effort(
        self,
        client: httpx.Client,
        method: str,
        url: str,
        *,
        what: str,
        **kwargs: Any,
    ) -> bool:
        try:
            self._request(client, method, url, what=what, **kwargs)
        except TokenExchangeFailed as exc:
            log_json(
                "oauth.revoke.failed",
                level=logging.WARNING,
                log=logger,
                provider=self.provider.value,
                upstream_message=exc.upstream_message,
            )
            return False
        return True

    def _token_set(self, payload: dict[str, Any], *, what: str) -> TokenSet:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise self._fail(f"{what} response has no access_token")

        refresh_token = payload.get("refresh_token")
        scope = payload.get("scope")
        return TokenSet(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            expires_in=_parse_expires_in(payload.get("expires_in")),
            scope=scope if isinstance(scope, str) else None,
        )


def as_mapping(raw: object) -> dict[str, Any]:
    """Nested JSON object, or an empty one when the provider sent something else."""
    return raw if isinstance(raw, dict) else {}


def as_records(raw: object) -> list[dict[str, Any]]:
    """JSON array of objects; non-object entries are dropped."""
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def as_text(raw: object) -> str | None:
    return raw if isinstance(raw, str) and raw else None


def as_id(raw: object) -> str | None:
    if isinstance(raw, bool) or not isinstance(raw, (str, int)):
        return None
    return str(raw) or None


def _parse_expires_in(raw: object) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def _upstream_error_text(res: httpx.Response) -> str:
    try:
        payload = res.json()
    except ValueError:
        return res.reason_phrase or f"HTTP {res.status_code}"

    if isinstance(payload, dict):
        err = payload.get("error")
        # Graph API nests {"error": {"message": ...}}.
        if isinstance(err, dict):
            msg = err.get("message") or err.get("type")
            if msg:
                return str(msg)
        desc = payload.get("error_description") or payload.get("detail") or payload.get("title")
        if desc:
            return str(desc)
        if isinstance(err, str) and err:
            return err
    return res.reason_phrase or f"HTTP {res.status_code}"
