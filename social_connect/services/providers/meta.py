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

# Graph paging is cursor based; stop following "next" links after this many pages.
_MAX_GRAPH_PAGES = 10

_INSTAGRAM_FIELDS = (
    "id,username,name,biography,website,followers_count,follows_count,"
    "media_count,profile_picture_url"
)


class MetaAdapter(ProviderAdapter):
    """Facebook Login for both Facebook Pages and Instagram business accounts.

    Meta has no refresh-token grant. The long-lived user token is stored as the
    vault "refresh token" and refreshing means exchanging it for a fresh
    long-lived user token (``fb_exchange_token``).
    """

    scope_separator = ","
    uses_pkce = False
    supports_refresh_token = True
    multi_account = True

    def __init__(self, *, client_id: str, client_secret: str, graph_version: str = "v23.0") -> None:
        super().__init__(client_id=client_id, client_secret=client_secret)
        self.graph_version = graph_version
        self.authorization_endpoint = f"https://www.facebook.com/{graph_version}/dialog/oauth"
        self.graph_url = f"https://graph.facebook.com/{graph_version}"

    def exchange_code(
        self,
        client: httpx.Client,
        *,
        code: str,
        code_verifier: str | None,
        redirect_uri: str,
    ) -> TokenSet:
        short = self._request(
            client,
            "POST",
            f"{self.graph_url}/oauth/access_token",
            what="Meta token exchange",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        short_token = self._token_set(short, what="Meta token exchange")
        return self._long_lived_user_token(client, short_token.access_token)

    def refresh(
        self,
        client: httpx.Client,
        *,
        refresh_token: str,
        provider_user_id: str,
    ) -> TokenSet:
        user_token = self._long_lived_user_token(client, refresh_token)
        return TokenSet(
            access_token=user_token.access_token,
            refresh_token=user_token.access_token,
            expires_in=user_token.expires_in,
            scope=user_token.scope,
        )

    def fetch_identity(self, client: httpx.Client, *, access_token: str) -> ProviderIdentity:
        payload = self._request(
            client,
            "GET",
            f"{self.graph_url}/me",
            what="Meta profile lookup",
            params={"fields": "id,name"},
            headers=_bearer(access_token),
        )
        user_id = as_id(payload.get("id"))
        if user_id is None:
            raise self._fail("Meta profile lookup returned no id")
        name = as_text(payload.get("name"))
        return ProviderIdentity(
            provider_user_id=user_id,
            display_name=name,
            metadata={"user_id": user_id, "name": name},
        )

    def revoke(self, client: httpx.Client, *, access_token: str) -> bool:
        return self._revoke_best_effort(
            client,
            "DELETE",
            f"{self.graph_url}/me/permissions",
            what="Meta permission revoke",
            headers=_bearer(access_token),
        )

    def sync_token(self, *, access_token: str, refresh_token: str | None) -> str:
        # Listing pages needs the user token, which lives in the refresh slot.
        return refresh_token or access_token

    def _long_lived_user_token(self, client: httpx.Client, user_token: str) -> TokenSet:
        payload = self._request(
            client,
            "POST",
            f"{self.graph_url}/oauth/access_token",
            what="Meta long-lived token exchange",
            data={
                "grant_type": "fb_exchange_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "fb_exchange_token": user_token,
            },
        )
        return self._token_set(payload, what="Meta long-lived token exchange")

    def _graph_pages(
        self,
        client: httpx.Client,
        *,
        path: str,
        params: dict[str, str],
        access_token: str,
        what: str,
    ) -> list[dict[str, Any]]:
        headers = _bearer(access_token)
        rows: list[dict[str, Any]] = []
        payload = self._request(
            client, "GET", f"{self.graph_url}{path}", what=what, params=params, headers=headers
        )
        for _ in range(_MAX_GRAPH_PAGES):
            data = payload.get("data")
            if data is not None and not isinstance(data, list):
                raise self._fail(f"{what} returned an unexpected data field")
            rows.extend(as_records(data))
            next_url = as_text(as_mapping(payload.get("paging")).get("next"))
            if next_url is None:
                break
            # Graph echoes the token into "next"; it travels in the header instead.
            next_page = httpx.URL(next_url).copy_remove_param("access_token")
            payload = self._request(client, "GET", next_page, what=what, headers=headers)
        return rows


class FacebookAdapter(MetaAdapter):
    provider = OAuthProvider.facebook
    display_name = "Facebook"
    fallback_note = "No pages found during initial setup"
    default_scopes = (
        "pages_show_list",
        "pages_read_engagement",
        "pages_read_user_content",
        "pages_manage_metadata",
        "read_insights",
        "public_profile",
        "business_management",
    )

    def refresh(
        self,
        client: httpx.Client,
        *,
        refresh_token: str,
        provider_user_id: str,
    ) -> TokenSet:
        user_token = self._long_lived_user_token(client, refresh_token)
        # Page tokens derived from a long-lived user token do not expire on their own.
        page = self._request(
            client,
            "GET",
            f"{self.graph_url}/{provider_user_id}",
            what="Facebook page token lookup",
            params={"fields": "access_token"},
            headers=_bearer(user_token.access_token),
        )
        page_token = as_text(page.get("access_token"))
        if page_token is None:
            raise self._fail("Facebook page token lookup returned no access_token")
        return TokenSet(
            access_token=page_token,
            refresh_token=user_token.access_token,
            expires_in=user_token.expires_in,
            scope=user_token.scope,
        )

    def fetch_sub_accounts(
        self,
        client: httpx.Client,
        *,
        access_token: str,
        identity: ProviderIdentity | None = None,
    ) -> list[SubAccount]:
        rows = self._graph_pages(
            client,
            path="/me/accounts",
            params={
                "fields": "id,name,category,access_token",
                "limit": "100",
            },
            access_token=access_token,
            what="Facebook page listing",
        )
        user_id = identity.provider_user_id if identity else None
        pages: list[SubAccount] = []
        for row in rows:
            page_id = as_id(row.get("id"))
            if page_id is None:
                continue
            name = as_text(row.get("name"))
            pages.append(
                SubAccount(
                    id=page_id,
                    name=name,
                    kind=ResourceKind.page,
                    access_token=as_text(row.get("access_token")),
                    metadata={
                        "name": name,
                        "category": as_text(row.get("category")),
                        "user_id": user_id,
                        "page_id": page_id,
                    },
                )
            )
        return pages

    def credentials_for(self, tokens: TokenSet, sub_account: SubAccount | None) -> TokenSet:
        if sub_account is None:
            # Bare user token fallback: no page to re-derive, so no refresh path.
            return TokenSet(
                access_token=tokens.access_token,
                refresh_token=None,
                expires_in=tokens.expires_in,
                scope=tokens.scope,
            )
        return TokenSet(
            access_token=sub_account.access_token or tokens.access_token,
            refresh_token=tokens.access_token,
            expires_in=tokens.expires_in,
            scope=tokens.scope,
        )


class InstagramAdapter(MetaAdapter):
    provider = OAuthProvider.instagram
    display_name = "Instagram"
    fallback_note = "No Instagram business accounts found during initial setup"
    default_scopes = (
        "instagram_basic",
        "instagram_manage_insights",
        "pages_show_list",
        "pages_read_engagement",
        "public_profile",
        "pages_manage_metadata",
        "business_management",
    )

    def fetch_sub_accounts(
        self,
        client: httpx.Client,
        *,
        access_token: str,
        identity: ProviderIdentity | None = None,
    ) -> list[SubAccount]:
        rows = self._graph_pages(
            client,
            path="/me/accounts",
            params={
                "fields": f"id,name,instagram_business_account{{{_INSTAGRAM_FIELDS}}}",
                "limit": "100",
            },
            access_token=access_token,
            what="Instagram account listing",
        )
        user_id = identity.provider_user_id if identity else None
        accounts: list[SubAccount] = []
        for row in rows:
            ig = row.get("instagram_business_account")
            ig_id = as_id(ig.get("id")) if isinstance(ig, dict) else None
            if ig_id is None:
                continue
            accounts.append(
                SubAccount(
                    id=ig_id,
                    name=as_text(ig.get("name")) or as_text(ig.get("username")),
                    kind=ResourceKind.instagram_account,
                    metadata={
                        "name": ig.get("name"),
                        "username": ig.get("username"),
                        "fb_page_id": row.get("id"),
                        "biography": ig.get("biography"),
                        "website": ig.get("website"),
                        "followers_count": ig.get("followers_count"),
                        "follows_count": ig.get("follows_count"),
                        "media_count": ig.get("media_count"),
                        "profile_picture_url": ig.get("profile_picture_url"),
                        "user_id": user_id,
                    },
                )
            )
        return accounts

    def credentials_for(self, tokens: TokenSet, sub_account: SubAccount | None) -> TokenSet:
        # Instagram Graph calls use the user token; it doubles as the refresh credential.
        return TokenSet(
            access_token=tokens.access_token,
            refresh_token=tokens.access_token,
            expires_in=tokens.expires_in,
            scope=tokens.scope,
        )


def _bearer(access_token: str) -> dict[str, str]:
    # Graph accepts the token as a header; query-string tokens end up in access logs.
    return {"Authorization": f"Bearer {access_token}"}
