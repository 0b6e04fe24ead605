"""Model listing for the ``/v1/models`` endpoint.

Not part of the translation core: the router only delegates to whichever
ModelCatalog the app was built with.

Modes:
    curated  the configured core list (default)
    all      every model the source knows about
    search   ``all`` filtered by a search term; an empty term means curated
"""

import asyncio
import time
from typing import Any, List, Optional, Protocol, Sequence

import httpx

from chatproxy.models import ModelDescriptor
from chatproxy.telemetry import logger
from chatproxy.upstream import UpstreamClient

CURATED_MODELS = [
    "openai/gpt-4o",
    "openai/gpt-4o-mini",
    "openai/gpt-4-turbo",
    "openai/gpt-4",
    "openai/gpt-3.5-turbo",
]

MODES = ("curated", "all", "search")


class ModelCatalog(Protocol):
    async def list(
        self,
        mode: str = "curated",
        search: Optional[str] = None,
        provider: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ModelDescriptor]:
        ...


def provider_of(model_id: str) -> str:
    """Return the provider prefix of ``provider/model`` ids."""
    if "/" in model_id:
        return model_id.split("/", 1)[0]
    return "openrouter"


def filter_models(
    models: Sequence[ModelDescriptor],
    search: Optional[str] = None,
    provider: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[ModelDescriptor]:
    """Apply search, provider and limit filters in that order."""
    result = list(models)
    if search:
        needle = search.lower()
        result = [
            m for m in result
            if needle in m.id.lower() or needle in m.owned_by.lower()
        ]
    if provider:
        prefix = "{}/".format(provider.lower())
        result = [
            m for m in result
            if m.owned_by.lower() == provider.lower() or m.id.lower().startswith(prefix)
        ]
    if limit is not None and limit > 0:
        result = result[:limit]
    return result


def curated_descriptors(extra_ids: Sequence[str] = ()) -> List[ModelDescriptor]:
    created = int(time.time())
    ids = list(CURATED_MODELS)
    ids.extend(m for m in extra_ids if m not in ids)
    return [ModelDescriptor(id=m, created=created) for m in ids]


class StaticModelCatalog:
    """Catalog that only knows the curated list."""

    def __init__(self, extra_ids: Sequence[str] = ()) -> None:
        self.extra_ids = list(extra_ids)

    async def list(
        self,
        mode: str = "curated",
        search: Optional[str] = None,
        provider: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ModelDescriptor]:
        models = curated_descriptors(self.extra_ids)
        if mode == "curated" or (mode == "search" and not search):
            return filter_models(models, provider=provider, limit=limit)
        return filter_models(models, search, provider, limit)


class UpstreamModelCatalog:
    """Catalog backed by the upstream ``/models`` endpoint.

    The full listing is cached for ``ttl_seconds``. Concurrent refreshes are
    serialized by an asyncio.Lock so only one upstream fetch runs at a time.
    If the fetch fails the curated list is served instead.
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        extra_ids: Sequence[str] = (),
        ttl_seconds: float = 900.0,
    ) -> None:
        self.upstream = upstream
        self.extra_ids = list(extra_ids)
        self.ttl_seconds = ttl_seconds
        self._cache: Optional[List[ModelDescriptor]] = None
        self._cached_at = 0.0
        self._lock = asyncio.Lock()

    async def list(
        self,
        mode: str = "curated",
        search: Optional[str] = None,
        provider: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ModelDescriptor]:
        if mode == "curated" or (mode == "search" and not search):
            curated = curated_descriptors(self.extra_ids)
            return filter_models(curated, provider=provider, limit=limit)
        models = await self._all_models()
        return filter_models(models, search, provider, limit)

    async def _all_models(self) -> List[ModelDescriptor]:
        async with self._lock:
            now = time.time()
            if self._cache is not None and now - self._cached_at < self.ttl_seconds:
                return self._cache

            try:
                response = await self.upstream.get_models()
                response.raise_for_status()
                models = _to_descriptors(response.json())
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "Failed to fetch models from upstream, using curated list: %s", exc
                )
                return curated_descriptors(self.extra_ids)

            self._cache = models
            self._cached_at = now
            logger.info("Fetched and cached %d models from upstream", len(models))
            return models

    def invalidate(self) -> None:
        self._cache = None
        self._cached_at = 0.0


def _to_descriptors(body: Any) -> List[ModelDescriptor]:
    if not isinstance(body, dict) or not isinstance(body.get("data"), list):
        raise ValueError("Upstream models listing has no 'data' array")
    models: List[ModelDescriptor] = []
    for entry in body["data"]:
        if not isinstance(entry, dict) or not entry.get("id"):
            continue
        created = entry.get("created")
        models.append(
            ModelDescriptor(
                id=entry["id"],
                created=created if isinstance(created, int) else 0,
                owned_by=provider_of(entry["id"]),
            )
        )
    return models
