"""
Embedding Client

This module implements the embedding client used by the ingestion pipeline.
It calls the Gemini ``embedContent`` REST endpoint and is responsible for:

- Routing every call through the shared retry executor
- Bounding each call with a timeout (expiry is retried, never a hang)
- Strict response validation, including the expected vector dimension

The class holds one ``httpx.AsyncClient`` and is safe to share across
concurrent item pipelines.
"""

from __future__ import annotations

from typing import Any, List, Optional
import logging
import httpx

from ..config import settings
from ..core.errors import EmbeddingError
from ..core.retry import RetryExecutor

logger = logging.getLogger("ingest.embedder")

EMBEDDING_CALL_CLASS = "embedding"


class Embedder:
    """
    Asynchronous text → fixed-dimension vector client.

    This class performs no caching; deduplication happens upstream in the
    ledger so already-stored chunks are never sent here.
    """

    def __init__(
        self,
        executor: RetryExecutor,
        dimension: int,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize an Embedder.

        Parameters
        ----------
        executor : RetryExecutor
            Shared executor providing retries.
        dimension : int
            Expected length of every returned vector.
        api_key : Optional[str]
            Override for the Google API key. Defaults to settings.google_api_key.
        model : Optional[str]
            Override for the embedding model. Defaults to settings.embedding_model.
        base_url : Optional[str]
            API root. Defaults to settings.embedding_base_url.
        timeout : float
            Per-attempt timeout in seconds.
        client : Optional[httpx.AsyncClient]
            Pre-built client (tests inject one backed by MockTransport).
        """
        self._executor = executor
        self.dimension = dimension
        self.api_key = api_key if api_key is not None else settings.google_api_key.get_secret_value()
        self.model = model or settings.embedding_model
        self.base_url = (base_url or settings.embedding_base_url).rstrip("/")
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> Embedder:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(self, text: str, context: Optional[str] = None) -> List[float]:
        """
        Generate the embedding for a single chunk of text.

        Parameters
        ----------
        text : str
            Chunk text.
        context : Optional[str]
            Description used in retry logs (e.g. the item and chunk index).

        Returns
        -------
        List[float]
            A vector of exactly ``self.dimension`` floats.

        Raises
        ------
        EmbeddingError
            If the response is malformed or has the wrong dimension.
        RetryExhaustedError
            If transient failures (including timeouts) persist.
        """
        if not text:
            raise EmbeddingError("Cannot embed empty text.")

        data = await self._executor.execute(
            lambda: self._post(text),
            context or "embedding",
            call_class=EMBEDDING_CALL_CLASS,
            timeout=self.timeout,
        )
        return self._extract_embedding(data, self.dimension)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _post(self, text: str) -> dict:
        payload = {
            "model": self.model,
            "content": {"role": "user", "parts": [{"text": text}]},
        }
        response = await self._client.post(
            f"{self.base_url}/{self.model}:embedContent",
            json=payload,
            headers={"x-goog-api-key": self.api_key},
        )
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.debug(
                "Embedding request failed: status=%d, chars=%d",
                exc.response.status_code,
                len(text),
            )
            raise

        try:
            return response.json()
        except ValueError as exc:
            raise EmbeddingError("Embedding response is not valid JSON.") from exc

    @staticmethod
    def _extract_embedding(data: dict, dimension: int) -> List[float]:
        """
        Parse and validate embedding output format.

        Gemini returns:
            { "embedding": { "values": [...] } }

        Raises
        ------
        EmbeddingError
            If the API returns unexpected structure.
        """
        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(embedding, dict) or "values" not in embedding:
            raise EmbeddingError("Embedding response missing 'embedding.values' field.")

        values = embedding["values"]
        if not isinstance(values, list) or not all(
            isinstance(x, (float, int)) and not isinstance(x, bool) for x in values
        ):
            raise EmbeddingError("Invalid embedding vector: must be a float list.")

        if len(values) != dimension:
            raise EmbeddingError(
                f"Embedding has dimension {len(values)}, expected {dimension}."
            )

        return [float(x) for x in values]
