"""
ProviderRegistry — catalog of provider metadata plus lazy loaders.

Built once at startup and passed to whoever needs providers; there is no
module-level singleton.  Metadata is available immediately, implementations
are imported on first ``get`` and cached.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Callable, Dict, List, Optional, Type

import httpx

from connectors.base import BaseConnectorProvider
from connectors.errors import ProviderLoadError, ProviderNotFoundError
from connectors.models import ProviderId, ProviderMetadata
from connectors.notifier import Notifier
from connectors.providers.catalog import BUILTIN_PROVIDERS
from connectors.store import ConnectorStore
from connectors.vault import TokenVault

logger = logging.getLogger(__name__)

ProviderLoader = Callable[[], Type[BaseConnectorProvider]]


def import_loader(module_path: str, class_name: str) -> ProviderLoader:
    """Loader that imports ``module_path`` and returns ``class_name`` from it."""

    def _load() -> Type[BaseConnectorProvider]:
        module = importlib.import_module(module_path)
        return getattr(module, class_name)

    return _load


class ProviderRegistry:
    def __init__(
        self,
        store: ConnectorStore,
        notifier: Notifier,
        vault: TokenVault,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._store = store
        self._notifier = notifier
        self._vault = vault
        self._client = client
        self._metadata: Dict[ProviderId, ProviderMetadata] = {}
        self._loaders: Dict[ProviderId, ProviderLoader] = {}
        self._instances: Dict[ProviderId, BaseConnectorProvider] = {}
        self._lock = asyncio.Lock()

    def register(self, metadata: ProviderMetadata, loader: ProviderLoader) -> None:
        self._metadata[metadata.id] = metadata
        self._loaders[metadata.id] = loader
        self._instances.pop(metadata.id, None)
        logger.info("Provider registered: %s (%s)", metadata.name, metadata.id.value)

    def has(self, provider: str) -> bool:
        return _coerce(provider) in self._loaders

    def get_metadata(self, provider: str) -> ProviderMetadata:
        provider_id = _coerce(provider)
        if provider_id not in self._metadata:
            raise ProviderNotFoundError(str(provider))
        return self._metadata[provider_id]

    def list_metadata(self) -> List[ProviderMetadata]:
        return list(self._metadata.values())

    def get_registered(self) -> List[ProviderId]:
        return list(self._loaders)

    async def get(self, provider: str) -> BaseConnectorProvider:
        """
        Return the provider instance, loading and initializing it on first use.

        Raises
        ------
        ProviderNotFoundError
            Nothing is registered under *provider*.
        ProviderLoadError
            Import, construction or ``initialize()`` failed.
        """
        provider_id = _coerce(provider)
        if provider_id is None or provider_id not in self._loaders:
            raise ProviderNotFoundError(str(provider))

        cached = self._instances.get(provider_id)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._instances.get(provider_id)
            if cached is not None:
                return cached
            try:
                provider_cls = self._loaders[provider_id]()
                instance = provider_cls(
                    store=self._store,
                    notifier=self._notifier,
                    vault=self._vault,
                    client=self._client,
                )
                await instance.initialize()
            except Exception as exc:
                logger.error("Failed to load provider %s: %s", provider_id.value, exc)
                raise ProviderLoadError(provider_id.value, exc) from exc
            self._instances[provider_id] = instance
            logger.debug("Provider loaded: %s", provider_id.value)
            return instance

    async def clear_cache(self) -> None:
        """Dispose every loaded instance; disposal errors are logged, not raised."""
        instances, self._instances = self._instances, {}
        results = await asyncio.gather(
            *(instance.dispose() for instance in instances.values()),
            return_exceptions=True,
        )
        for provider_id, result in zip(instances, results):
            if isinstance(result, Exception):
                logger.warning("Error disposing provider %s: %s", provider_id.value, result)

    async def reset(self) -> None:
        await self.clear_cache()
        self._metadata.clear()
        self._loaders.clear()


def _coerce(provider: str) -> Optional[ProviderId]:
    try:
        return ProviderId(provider)
    except ValueError:
        return None


def build_default_registry(
    store: ConnectorStore,
    notifier: Notifier,
    vault: TokenVault,
    client: Optional[httpx.AsyncClient] = None,
) -> ProviderRegistry:
    """Registry with every built-in provider registered (nothing imported yet)."""
    registry = ProviderRegistry(store, notifier, vault, client)
    for metadata, module_path, class_name in BUILTIN_PROVIDERS.values():
        registry.register(metadata, import_loader(module_path, class_name))
    return registry
