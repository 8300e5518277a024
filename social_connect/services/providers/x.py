from __future__ import annotations

import httpx

from social_connect.models.enums import OAuthProvider, ResourceKind
from social_connect.services.providers.base import (
    ProviderAdapter,
    ProviderIdentity,
    SubAccount,
    TokenSet,
    as_id,
    as_mapping,
    as_text,
)

X_AUTHORIZE_URL = "https://twitter.com/i/oauth2/authorize"
X_TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
X_REVOKE_URL = "https://api.twitter.com/2/oauth2/revoke"
X_ME_URL = "https://api.twitter.com/2/users/me"


class XAdapter(ProviderAdapter):
    provider = OAuthProvider.x
    display_name = "X"
    authorization_endpoint = X_AUTHORIZE_URL
    default_scopes = ("tweet.read", "users.read", "follows.read", "offline.access")
    uses_pkce = True
    supports_refresh_token = True

    def _basic_auth(self) -> httpx.BasicAuth:
        # Confidential clients authenticate the token endpoint with HTTP Basic.
        return httpx.BasicAuth(self.client_id, self.client_secret)

    def exchange_code(
        self,
        client: httpx.Client,
        *,
        code: str,
        code_verifier: str | None,
        redirect_uri: str,
    ) -> TokenSet:
        payload = self._request(
            client,
            "POST",
            X_TOKEN_URL,
            what="X token exchange",
            data={
                "code": code,
                "grant_type": "authorization_code",
                "client_id": self.client_id,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier or "",
            },
            auth=self._basic_auth(),
        )
        return self._token_set(payload, what="X token exchange")

    def refresh(
        self,
        client: httpx.Client,
        *,
        refresh_token: str,
        provider_user_id: str,
    ) -> TokenSet:
        # X rotates refresh tokens; the new one comes back in the same payload.
        payload = self._request(
            client,
            "POST",
            X_TOKEN_URL,
            what="X token refresh",
            data={
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
                "client_id": self.client_id,
            },
            auth=self._basic_auth(),
        )
        return self._token_set(payload, what="X token refresh")

    def fetch_identity(self, client: httpx.Client, *, access_token: str) -> ProviderIdentity:
        payload = self._request(
            client,
            "GET",
            X_ME_URL,
            what="X profile lookup",
            params={"user.fields": "name,username,profile_image_url,public_metrics,verified"},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        data = payload.get("data")
        if not isinstance(data, dict):
            raise self._fail("X profile lookup returned an unexpected payload")
        user_id = as_id(data.get("id"))
        if user_id is None:
            raise self._fail("X profile lookup returned no id")
        name = as_text(data.get("name"))
        username = as_text(data.get("username"))
        metrics = as_mapping(data.get("public_metrics"))
        return ProviderIdentity(
            provider_user_id=user_id,
            display_name=name or username,
            metadata={
                "username": username,
                "name": name,
                "profile_image_url": as_text(data.get("profile_image_url")),
                "verified": data.get("verified"),
                "followers_count": metrics.get("followers_count"),
                "following_count": metrics.get("following_count"),
            },
        )

    def fetch_sub_accounts(
        self,
        client: httpx.Client,
        *,
        access_token: str,
        identity: ProviderIdentity | None = None,
    ) -> list[SubAccount]:
        if identity is None:
            identity = self.fetch_identity(client, access_token=access_token)
        return [
            SubAccount(
                id=identity.provider_user_id,
                name=identity.display_name,
                kind=ResourceKind.profile,
                metadata=dict(identity.metadata),
            )
        ]

    def revoke(self, client: httpx.Client, *, access_token: str) -> bool:
        return self._revoke_best_effort(
            client,
            "POST",
            X_REVOKE_URL,
            what="X token revoke",
            data={
                "token": access_token,
                "token_type_hint": "access_token",
                "client_id": self.client_id,
            },
            auth=self._basic_auth(),
        )
