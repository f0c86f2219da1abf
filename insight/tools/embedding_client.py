"""OpenAI embedding client.

Implements ``EmbeddingPort`` over the OpenAI embeddings REST endpoint with
httpx. Transient HTTP failures are retried with exponential backoff; a
response of the wrong shape is reported as ``ProviderRejected``.
"""

from __future__ import annotations

import os
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from insight.ports import EmbeddingPort
from insight.schemas.events import EmbeddingResult
from libs.common.errors import ProviderRejected

logger = structlog.get_logger(__name__)

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
MAX_INPUT_CHARS = 8000


class OpenAIEmbeddingClient(EmbeddingPort):
    """OpenAI client for generating embeddings."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else os.environ.get("OPENAI_API_KEY", "")
        self.model = model or os.environ.get("OPENAI_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)
        self.timeout = timeout
        self._transport = transport

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _post(self, inputs: List[str]) -> Dict[str, Any]:
        if not self.api_key:
            raise ProviderRejected("embedding", "OPENAI_API_KEY is not configured")

        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
            response = await client.post(
                OPENAI_EMBEDDINGS_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "input": [text[:MAX_INPUT_CHARS] for text in inputs],
                    "encoding_format": "float",
                },
            )
        if response.status_code != 200:
            logger.error("OpenAI embedding failed", status=response.status_code, response=response.text[:200])
            raise ProviderRejected("embedding", f"HTTP {response.status_code}")
        return response.json()

    def _parse(self, data: Dict[str, Any], expected: int) -> List[EmbeddingResult]:
        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            vectors = [list(map(float, item["embedding"])) for item in items]
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderRejected("embedding", f"unexpected response shape: {e}") from e

        if len(vectors) != expected or any(not vector for vector in vectors):
            raise ProviderRejected("embedding", f"expected {expected} embeddings, got {len(vectors)}")

        model = data.get("model", self.model)
        total_tokens = float((data.get("usage") or {}).get("total_tokens", 0))
        per_item_tokens = total_tokens / expected if expected else 0
        return [EmbeddingResult(embedding=vector, model=model, total_tokens=per_item_tokens) for vector in vectors]

    async def create_embedding(self, text: str) -> EmbeddingResult:
        return (await self.create_batch_embeddings([text]))[0]

    async def create_batch_embeddings(self, texts: List[str]) -> List[EmbeddingResult]:
        if not texts:
            return []
        start_time = time.time()
        results = self._parse(await self._post(texts), len(texts))
        logger.info(
            "Embeddings generated",
            model=self.model,
            count=len(results),
            embedding_dim=len(results[0].embedding),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return results


_embedding_client: Optional[OpenAIEmbeddingClient] = None


def get_embedding_client() -> OpenAIEmbeddingClient:
    """Get or create the global embedding client."""
    global _embedding_client
    if _embedding_client is None:
        from libs.common.settings import get_settings

        _embedding_client = OpenAIEmbeddingClient(timeout=get_settings().embedding_timeout_seconds)
    return _embedding_client
