"""
Catalog Source Adapter

Async client for the TMDB v3 API. Provides the two reads the ingestion
pipeline needs:

- ``fetch_page``        one page of the "discover" listing for a release year
- ``fetch_enrichment``  streaming providers for one title (best-effort)

Both are routed through the shared ``RetryExecutor`` under the ``catalog``
call class, so they share one rate limit.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ..config import settings
from ..core.errors import CatalogAuthError, RetryExhaustedError, TransientError
from ..core.retry import RetryExecutor
from ..models import CatalogItem, EnrichmentRecord

logger = logging.getLogger("ingest.catalog")

CATALOG_CALL_CLASS = "catalog"


class CatalogClient:
    """
    Paginated catalog reader keyed by release year.

    A single ``httpx.AsyncClient`` is reused for the lifetime of the adapter;
    use it as an async context manager or call ``aclose()``.
    """

    def __init__(
        self,
        executor: RetryExecutor,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        region: str = "US",
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Parameters
        ----------
        executor : RetryExecutor
            Shared executor providing rate limiting and retries.
        api_key : Optional[str]
            TMDB API key. Defaults to settings.tmdb_api_key.
        base_url : Optional[str]
            API root. Defaults to settings.tmdb_base_url.
        region : str
            ISO 3166-1 country used to select streaming providers.
        timeout : Optional[float]
            HTTP timeout per request. Defaults to settings.tmdb_timeout.
        client : Optional[httpx.AsyncClient]
            Pre-built client (tests inject one backed by MockTransport).
        """
        self._executor = executor
        self._api_key = api_key if api_key is not None else settings.tmdb_api_key.get_secret_value()
        self.base_url = (base_url or settings.tmdb_base_url).rstrip("/")
        self.region = region
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout or settings.tmdb_timeout)

    async def __aenter__(self) -> CatalogClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self._client.get(
            f"{self.base_url}{path}",
            params={"api_key": self._api_key, **params},
        )
        if resp.status_code in (401, 403):
            raise CatalogAuthError(
                f"Catalog provider rejected request to {path} (HTTP {resp.status_code})"
            )
        resp.raise_for_status()
        try:
            return resp.json()
        except ValueError as exc:
            raise TransientError(f"Malformed JSON from catalog provider for {path}") from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_page(self, partition_key: int, page: int) -> List[CatalogItem]:
        """
        Fetch one page of titles released in *partition_key*.

        Returns
        -------
        List[CatalogItem]
            Items in provider order. An empty list means the partition is
            exhausted.
        """
        params = {
            "language": "en-US",
            "sort_by": "popularity.desc",
            "include_adult": "false",
            "include_video": "false",
            "primary_release_year": partition_key,
            "page": page,
        }
        data = await self._executor.execute(
            lambda: self._get("/discover/movie", params),
            f"fetch catalog partition={partition_key} page={page}",
            call_class=CATALOG_CALL_CLASS,
        )

        items: List[CatalogItem] = []
        for raw in data.get("results") or []:
            try:
                if not isinstance(raw, dict):
                    raise TypeError("catalog record is not an object")
                items.append(
                    CatalogItem.model_validate({**raw, "partition_key": partition_key})
                )
            except (TypeError, ValidationError):
                logger.warning(
                    "Dropping malformed catalog record partition=%s page=%s: %r",
                    partition_key,
                    page,
                    raw,
                )
        return items

    async def fetch_enrichment(self, item_id: int) -> EnrichmentRecord:
        """
        Fetch streaming providers for *item_id* in the configured region.

        Best-effort: any failure other than an auth rejection yields an empty
        record.
        """
        try:
            data = await self._executor.execute(
                lambda: self._get(f"/movie/{item_id}/watch/providers", {}),
                f"watch providers for item={item_id}",
                call_class=CATALOG_CALL_CLASS,
            )
        except (RetryExhaustedError, TransientError, httpx.HTTPError) as exc:
            logger.warning(
                "Enrichment unavailable for item=%s (%s); continuing without it",
                item_id,
                type(exc).__name__,
            )
            return EnrichmentRecord.empty(item_id)

        regional = (data.get("results") or {}).get(self.region) or {}
        providers = [
            entry["provider_name"]
            for entry in regional.get("flatrate") or []
            if isinstance(entry, dict) and entry.get("provider_name")
        ]
        return EnrichmentRecord(item_id=item_id, providers=providers)
