# tekitoi/providers/__init__.py
from typing import Union

import httpx

from ..registry.client_registry import ClientRegistry
from ..registry.models import ProviderConfig, ProviderKind
from .federated import FEDERATED_ADAPTERS, FederatedProviderAdapter
from .local import CredentialsProviderAdapter, LocalProviderAdapter, SelectableUsersProviderAdapter

ProviderAdapter = Union[LocalProviderAdapter, FederatedProviderAdapter]


def build_provider_adapter(
    provider: ProviderConfig,
    *,
    registry: ClientRegistry,
    application_id: str,
    redirect_url: str,
    http_client: httpx.AsyncClient,
) -> ProviderAdapter:
    """Dispatch over the closed set of provider kinds."""
    kind = provider.provider_kind
    if kind == ProviderKind.CREDENTIALS:
        return CredentialsProviderAdapter(provider, registry, application_id)
    if kind in (ProviderKind.PROFILES, ProviderKind.USER_LIST):
        return SelectableUsersProviderAdapter(provider, registry, application_id)
    return FEDERATED_ADAPTERS[kind](provider, redirect_url, http_client)


__all__ = [
    "ProviderAdapter",
    "LocalProviderAdapter",
    "CredentialsProviderAdapter",
    "SelectableUsersProviderAdapter",
    "FederatedProviderAdapter",
    "build_provider_adapter",
]
