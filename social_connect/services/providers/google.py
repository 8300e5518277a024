from __future__ import annotations

from typing import Any

import httpx

from social_connect.models.enums import OAuthProvider, ResourceKind
from social_connect.services.providers.base import (
    ProviderAdapter,
    ProviderIdentity,
    SubAccount,
    TokenSet,
    as_id,
    as_mapping,
    as_records,
    as_text,
)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
YOUTUBE_CHANNELS_URL = "https://www.googleapis.com/youtube/v3/channels"
GA4_ACCOUNT_SUMMARIES_URL = "https://analyticsadmin.googleapis.com/v1beta/accountSummaries"


class GoogleAdapter(ProviderAdapter):
    authorization_endpoint = GOOGLE_OAUTH_AUTHORIZE_URL
    uses_pkce = True
    supports_refresh_token = True
    extra_authorize_params = {
        "access_type": "offline",
        # Refresh tokens are often only returned once unless we force consent.
        "prompt": "consent",
        "include_granted_scopes": "true",
    }

    def exchange_code(
        self,
        client: httpx.Client,
        *,
        code: str,
        code_verifier: str | None,
        redirect_uri: str,
    ) -> TokenSet:
        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        payload = self._request(
            client,
            "POST",
            GOOGLE_OAUTH_TOKEN_URL,
            what="Google token exchange",
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return self._token_set(payload, what="Google token exchange")

    def refresh(
        self,
        client: httpx.Client,
        *,
        refresh_token: str,
        provider_user_id: str,
    ) -> TokenSet:
        payload = self._request(
            client,
            "POST",
            GOOGLE_OAUTH_TOKEN_URL,
            what="Google token refresh",
            data={
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return self._token_set(payload, what="Google token refresh")

    def fetch_identity(self, client: httpx.Client, *, access_token: str) -> ProviderIdentity:
        payload = self._request(
            client,
            "GET",
            GOOGLE_USERINFO_URL,
            what="Google profile lookup",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        user_id = as_id(payload.get("id"))
        if user_id is None:
            raise self._fail("Google profile lookup returned no id")
        name = as_text(payload.get("name"))
        email = as_text(payload.get("email"))
        return ProviderIdentity(
            provider_user_id=user_id,
            display_name=name or email,
            metadata={
                "email": email,
                "name": name,
                "picture": as_text(payload.get("picture")),
            },
        )

    def revoke(self, client: httpx.Client, *, access_token: str) -> bool:
        return self._revoke_best_effort(
            client,
            "POST",
            GOOGLE_OAUTH_REVOKE_URL,
            what="Google token revoke",
            data={"token": access_token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )


class YouTubeAdapter(GoogleAdapter):
    provider = OAuthProvider.youtube
    display_name = "YouTube"
    default_scopes = (
        "openid",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
        "https://www.googleapis.com/auth/youtube.readonly",
        "https://www.googleapis.com/auth/yt-analytics.readonly",
    )

    def fetch_sub_accounts(
        self,
        client: httpx.Client,
        *,
        access_token: str,
        identity: ProviderIdentity | None = None,
    ) -> list[SubAccount]:
        payload = self._request(
            client,
            "GET",
            YOUTUBE_CHANNELS_URL,
            what="YouTube channel listing",
            params={"part": "snippet,statistics", "mine": "true", "maxResults": "50"},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        channels: list[SubAccount] = []
        for item in as_records(payload.get("items")):
            channel_id = as_id(item.get("id"))
            if channel_id is None:
                continue
            snippet = as_mapping(item.get("snippet"))
            stats = as_mapping(item.get("statistics"))
            thumbnail = as_mapping(as_mapping(snippet.get("thumbnails")).get("default")).get("url")
            channels.append(
                SubAccount(
                    id=channel_id,
                    name=as_text(snippet.get("title")),
                    kind=ResourceKind.channel,
                    metadata={
                        "custom_url": snippet.get("customUrl"),
                        "thumbnail_url": thumbnail,
                        "subscriber_count": _as_int(stats.get("subscriberCount")),
                        "video_count": _as_int(stats.get("videoCount")),
                    },
                )
            )
        return channels


class GA4Adapter(GoogleAdapter):
    provider = OAuthProvider.ga4
    display_name = "Google Analytics 4"
    default_scopes = (
        "openid",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
        "https://www.googleapis.com/auth/analytics.readonly",
    )

    def fetch_sub_accounts(
        self,
        client: httpx.Client,
        *,
        access_token: str,
        identity: ProviderIdentity | None = None,
    ) -> list[SubAccount]:
        properties: list[SubAccount] = []
        params: dict[str, str] = {"pageSize": "200"}
        # Bounded paging; an admin with more properties than this is not a real team.
        for _ in range(10):
            payload = self._request(
                client,
                "GET",
                GA4_ACCOUNT_SUMMARIES_URL,
                what="GA4 property listing",
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            for summary in as_records(payload.get("accountSummaries")):
                properties.extend(_ga4_properties(summary))
            next_token = as_text(payload.get("nextPageToken"))
            if next_token is None:
                break
            params = {"pageSize": "200", "pageToken": next_token}
        return properties


def _ga4_properties(summary: dict[str, Any]) -> list[SubAccount]:
    out: list[SubAccount] = []
    for prop in as_records(summary.get("propertySummaries")):
        # "properties/123456" -> "123456"
        resource_name = as_text(prop.get("property")) or ""
        prop_id = resource_name.rsplit("/", 1)[-1]
        if not prop_id:
            continue
        out.append(
            SubAccount(
                id=prop_id,
                name=as_text(prop.get("displayName")) or "GA4 Property",
                kind=ResourceKind.property,
                metadata={
                    "account": summary.get("account"),
                    "account_name": summary.get("displayName"),
                    "property_type": prop.get("propertyType"),
                },
            )
        )
    return out


def _as_int(raw: object) -> int | None:
    try:
        return int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return None
