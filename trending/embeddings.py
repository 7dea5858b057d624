"""OpenAI-compatible embedding client.

This is a pure call boundary: it never retries. Each input gets its own
EmbeddingOutcome, and the queue manager decides what to do with failures.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from typing import Optional

import httpx
from aiolimiter import AsyncLimiter

from trending.constants import (
    EMBEDDING_API_BASE,
    EMBEDDING_DIMENSIONS,
    EMBEDDING_MODEL,
    EMBEDDING_REQUEST_CHUNK,
    EMBEDDING_REQUESTS_PER_MINUTE,
    HTTP_CONNECT_TIMEOUT,
    HTTP_POOL_TIMEOUT,
    HTTP_READ_TIMEOUT,
    HTTP_USER_AGENT,
    HTTP_WRITE_TIMEOUT,
    MAX_BATCH_SIZE,
)
from trending.errors import (
    PermanentItemFailure,
    ServiceUnavailable,
    TransientCallFailure,
)
from trending.models import EmbeddingOutcome

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}

_EMBEDDING_LIMITER: AsyncLimiter = AsyncLimiter(EMBEDDING_REQUESTS_PER_MINUTE, 60)


def _extract_error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text.strip()
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str):
                return msg.strip()
    return resp.text.strip()


def classify_response(resp: httpx.Response) -> Exception:
    """Map a non-200 response onto the transient/permanent split."""
    message = f"Embedding API error {resp.status_code}: {_extract_error_message(resp)}"
    if resp.status_code in TRANSIENT_STATUS_CODES or resp.status_code >= 500:
        return TransientCallFailure(message, status_code=resp.status_code)
    return PermanentItemFailure(message, status_code=resp.status_code)


def _split_tokens(total: int, count: int) -> list[int]:
    # usage is reported per request; spread it over the inputs
    if count <= 0:
        return []
    base, extra = divmod(max(0, total), count)
    return [base + (1 if i < extra else 0) for i in range(count)]


class EmbeddingProvider:
    """Batch text to 1536-dim vectors through the ``/embeddings`` endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = EMBEDDING_MODEL,
        base_url: str = EMBEDDING_API_BASE,
        dimensions: int = EMBEDDING_DIMENSIONS,
        chunk_size: int = EMBEDDING_REQUEST_CHUNK,
        client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[AsyncLimiter] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.environ.get("OPENAI_API_KEY")
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.dimensions = dimensions
        self.chunk_size = max(1, chunk_size)
        self._client = client
        self._limiter = limiter or _EMBEDDING_LIMITER

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def embed_batch(
        self, items: Sequence[tuple[str, str]]
    ) -> list[EmbeddingOutcome]:
        """Embed ``(id, prepared_input)`` pairs, one outcome per pair, in order.

        Raises ServiceUnavailable before any network call when no API key is
        configured. Call failures are reported per item, never raised.
        """
        if not self.is_configured():
            raise ServiceUnavailable("OPENAI_API_KEY not set")

        batch = list(items)[:MAX_BATCH_SIZE]
        if len(items) > MAX_BATCH_SIZE:
            logger.warning(
                "Embedding batch of %d exceeds limit %d, truncating",
                len(items),
                MAX_BATCH_SIZE,
            )

        outcomes: dict[str, EmbeddingOutcome] = {}
        sendable: list[tuple[str, str]] = []
        for item_id, text in batch:
            if not text.strip():
                outcomes[item_id] = EmbeddingOutcome(
                    article_id=item_id,
                    error="PermanentItemFailure: empty embedding input",
                )
            else:
                sendable.append((item_id, text))

        if sendable:
            if self._client is not None:
                await self._embed_all(self._client, sendable, outcomes)
            else:
                timeout = httpx.Timeout(
                    connect=HTTP_CONNECT_TIMEOUT,
                    read=HTTP_READ_TIMEOUT,
                    write=HTTP_WRITE_TIMEOUT,
                    pool=HTTP_POOL_TIMEOUT,
                )
                async with httpx.AsyncClient(timeout=timeout) as client:
                    await self._embed_all(client, sendable, outcomes)

        ok = sum(1 for o in outcomes.values() if o.ok)
        logger.info(
            "Embedding batch complete: %d succeeded, %d failed",
            ok,
            len(outcomes) - ok,
        )
        return [outcomes[item_id] for item_id, _ in batch]

    async def _embed_all(
        self,
        client: httpx.AsyncClient,
        items: list[tuple[str, str]],
        outcomes: dict[str, EmbeddingOutcome],
    ) -> None:
        for start in range(0, len(items), self.chunk_size):
            chunk = items[start : start + self.chunk_size]
            try:
                vectors, tokens = await self._request(client, [text for _, text in chunk])
            except (TransientCallFailure, PermanentItemFailure) as e:
                transient = isinstance(e, TransientCallFailure)
                logger.warning(
                    "Embedding request for %d inputs failed (%s): %s",
                    len(chunk),
                    "transient" if transient else "permanent",
                    e,
                )
                for item_id, _ in chunk:
                    outcomes[item_id] = EmbeddingOutcome(
                        article_id=item_id,
                        error=f"{type(e).__name__}: {e}",
                        transient=transient,
                    )
                continue

            for (item_id, _), vector, token_count in zip(chunk, vectors, tokens):
                if vector is None:
                    outcomes[item_id] = EmbeddingOutcome(
                        article_id=item_id,
                        error="PermanentItemFailure: no embedding returned for input",
                    )
                elif len(vector) != self.dimensions:
                    outcomes[item_id] = EmbeddingOutcome(
                        article_id=item_id,
                        error=(
                            "PermanentItemFailure: invalid embedding dimensions: "
                            f"expected {self.dimensions}, got {len(vector)}"
                        ),
                    )
                else:
                    outcomes[item_id] = EmbeddingOutcome(
                        article_id=item_id,
                        embedding=vector,
                        token_count=token_count,
                    )

    async def _request(
        self, client: httpx.AsyncClient, inputs: list[str]
    ) -> tuple[list[Optional[list[float]]], list[int]]:
        payload: dict[str, object] = {
            "model": self.model,
            "input": inputs,
            "dimensions": self.dimensions,
        }
        try:
            async with self._limiter:
                resp = await client.post(
                    f"{self.base_url}/embeddings",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                        "User-Agent": HTTP_USER_AGENT,
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise TransientCallFailure(str(e) or type(e).__name__) from e

        if resp.status_code != 200:
            raise classify_response(resp)

        try:
            data = resp.json()
            rows = data["data"]
        except (ValueError, KeyError, TypeError) as e:
            raise PermanentItemFailure(f"Malformed embedding response: {e}") from e

        vectors: list[Optional[list[float]]] = [None] * len(inputs)
        for pos, row in enumerate(rows):
            idx = row.get("index", pos) if isinstance(row, dict) else pos
            embedding = row.get("embedding") if isinstance(row, dict) else None
            if isinstance(idx, int) and 0 <= idx < len(inputs) and isinstance(embedding, list):
                vectors[idx] = [float(x) for x in embedding]

        usage = data.get("usage") if isinstance(data, dict) else None
        total_tokens = usage.get("total_tokens", 0) if isinstance(usage, dict) else 0
        return vectors, _split_tokens(int(total_tokens or 0), len(inputs))
