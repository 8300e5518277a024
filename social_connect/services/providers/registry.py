from __future__ import annotations

from collections.abc import Iterable, Iterator

from social_connect.core.config import Settings, get_settings
from social_connect.core.errors import UnknownProvider
from social_connect.models.enums import OAuthProvider
from social_connect.services.providers.base import ProviderAdapter
from social_connect.services.providers.google import GA4Adapter, YouTubeAdapter
from social_connect.services.providers.meta import FacebookAdapter, InstagramAdapter
from social_connect.services.providers.x import XAdapter


def parse_provider(value: str) -> OAuthProvider:
    try:
        return OAuthProvider(value)
    except ValueError as exc:
        raise UnknownProvider(f"Invalid provider: {value}") from exc


class ProviderRegistry:
    def __init__(self, adapters: Iterable[ProviderAdapter]) -> None:
        self._adapters: dict[OAuthProvider, ProviderAdapter] = {}
        for adapter in adapters:
            self._adapters[adapter.provider] = adapter

    def get(self, provider: OAuthProvider | str) -> ProviderAdapter:
        key = provider if isinstance(provider, OAuthProvider) else parse_provider(provider)
        adapter = self._adapters.get(key)
        if adapter is None:
            raise UnknownProvider(f"Invalid provider: {key.value}")
        return adapter

    def __iter__(self) -> Iterator[ProviderAdapter]:
        return iter(self._adapters.values())

    def __contains__(self, provider: object) -> bool:
        return provider in self._adapters


def build_provider_registry(settings: Settings) -> ProviderRegistry:
    return ProviderRegistry(
        [
            YouTubeAdapter(
                client_id=settings.GOOGLE_CLIENT_ID, client_secret=settings.GOOGLE_CLIENT_SECRET
            ),
            GA4Adapter(
                client_id=settings.GOOGLE_CLIENT_ID, client_secret=settings.GOOGLE_CLIENT_SECRET
            ),
            FacebookAdapter(
                client_id=settings.META_APP_ID,
                client_secret=settings.META_APP_SECRET,
                graph_version=settings.META_GRAPH_VERSION,
            ),
            InstagramAdapter(
                client_id=settings.META_APP_ID,
                client_secret=settings.META_APP_SECRET,
                graph_version=settings.META_GRAPH_VERSION,
            ),
            XAdapter(client_id=settings.X_CLIENT_ID, client_secret=settings.X_CLIENT_SECRET),
        ]
    )


def get_provider_registry() -> ProviderRegistry:
    # Built per request from settings; tests swap it via dependency_overrides.
    return build_provider_registry(get_settings())
