import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any

import httpx

from ..config import (
    AI_LOG_PAYLOADS,
    AI_TIMEOUT_S,
    EMBEDDING_DIMENSION,
    EMBEDDING_MAX_INPUT_CHARS,
    EMBEDDINGS_MODEL,
    GEMINI_API_KEY,
    GEMINI_API_VERSION,
    GEMINI_BASE_URL,
)
from ..utils.error_handlers import (
    EmbeddingError,
    EmbeddingProviderAPIError,
    EmbeddingProviderUnavailable,
    EmbeddingTokenLimitExceeded,
    InvalidEmbeddingInput,
)
from ..utils.results import Err, Ok, Result
from .embeddings import normalize_text, repair_dimension, truncate_head


logger = logging.getLogger(__name__)

TASK_RETRIEVAL_QUERY = "RETRIEVAL_QUERY"
TASK_RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"

_TOKEN_LIMIT_HINTS = ("token", "too long", "exceeds", "payload size")


@dataclass(frozen=True)
class EmbeddingMeta:
    model: str
    latency_ms: int
    status_code: int | None


@dataclass(frozen=True)
class EmbeddingVector:
    values: list[float]
    model: str
    task_type: str
    truncated: bool = False
    repaired: bool = False
    original_dimension: int | None = None

    @property
    def dimension(self) -> int:
        return len(self.values)


def _safe_truncate(s: str, n: int = 800) -> str:
    s = s or ""
    if len(s) <= n:
        return s
    return s[:n] + "…"


def _model_path(model: str) -> str:
    m = (model or "").strip()
    if m.startswith("models/"):
        m = m[len("models/") :]
    return m


def _parse_values(data: Any) -> list[float]:
    """
    Typical shape:
    { embedding: { values: [0.01, -0.2, ...] } }
    Anything else is a malformed response.
    """
    if not isinstance(data, dict):
        raise EmbeddingProviderAPIError("Malformed embedding response: not an object")
    emb = data.get("embedding")
    if not isinstance(emb, dict) or "values" not in emb:
        raise EmbeddingProviderAPIError("Malformed embedding response: missing embedding.values")
    values = emb.get("values")
    if not isinstance(values, list):
        raise EmbeddingProviderAPIError("Malformed embedding response: embedding.values is not a list")
    out: list[float] = []
    for x in values:
        if isinstance(x, bool) or not isinstance(x, (int, float)):
            raise EmbeddingProviderAPIError("Malformed embedding response: non-numeric value")
        if not math.isfinite(x):
            raise EmbeddingProviderAPIError("Malformed embedding response: non-finite value")
        out.append(float(x))
    return out


async def gemini_embed_content(
    *,
    api_key: str | None,
    base_url: str,
    api_version: str = "v1beta",
    model: str,
    text: str,
    task_type: str = TASK_RETRIEVAL_QUERY,
    output_dimensionality: int | None = None,
    timeout_s: float = 10.0,
    client: httpx.AsyncClient | None = None,
    log_payloads: bool = False,
) -> tuple[list[float], EmbeddingMeta]:
    """
    Calls the Gemini embedContent API (API key auth) and returns the raw vector.
    Exactly one outbound request; retry policy belongs to the caller.

    Endpoint:
      POST {base_url}/{api_version}/models/{model}:embedContent
    Auth:
      x-goog-api-key: {api_key}
    """
    if not api_key:
        raise EmbeddingProviderUnavailable("Missing GEMINI_API_KEY")
    if not model:
        raise EmbeddingProviderUnavailable("Missing EMBEDDINGS_MODEL")

    api_v = (api_version or "v1beta").strip().lstrip("/")
    base = (base_url or "").rstrip("/")
    model_path = _model_path(model)
    url = f"{base}/{api_v}/models/{model_path}:embedContent"

    body: dict[str, Any] = {
        "model": f"models/{model_path}",
        "content": {"parts": [{"text": text}]},
        "taskType": task_type,
    }
    if output_dimensionality:
        body["outputDimensionality"] = int(output_dimensionality)

    headers = {
        "x-goog-api-key": api_key,
        "content-type": "application/json",
    }

    if log_payloads:
        logger.info(
            "Gemini embed request model=%s url=%s body=%s",
            model,
            url,
            _safe_truncate(json.dumps(body, ensure_ascii=False)),
        )

    start = time.perf_counter()
    try:
        if client is not None:
            r = await client.post(url, json=body, headers=headers, timeout=timeout_s)
        else:
            async with httpx.AsyncClient(timeout=timeout_s) as own_client:
                r = await own_client.post(url, json=body, headers=headers)
    except (httpx.ReadTimeout, httpx.ConnectTimeout, httpx.PoolTimeout, httpx.WriteTimeout):
        raise EmbeddingProviderUnavailable("Embedding request timed out") from None
    except httpx.RequestError as e:
        raise EmbeddingProviderUnavailable(f"Embedding request failed: {type(e).__name__}") from e

    if r.status_code >= 400:
        msg = _safe_truncate(r.text, 1000)
        if r.status_code in {400, 413} and any(h in msg.lower() for h in _TOKEN_LIMIT_HINTS):
            raise EmbeddingTokenLimitExceeded(f"Embedding input rejected as too large: {msg}")
        raise EmbeddingProviderAPIError(f"Embedding API HTTP {r.status_code}: {msg}", http_status=r.status_code)

    try:
        data = r.json()
    except ValueError:
        raise EmbeddingProviderAPIError("Malformed embedding response: body is not JSON") from None

    values = _parse_values(data)
    meta = EmbeddingMeta(
        model=model,
        latency_ms=int((time.perf_counter() - start) * 1000),
        status_code=r.status_code,
    )
    logger.debug("Gemini embed ok model=%s status=%s latency_ms=%s dim=%s", model, r.status_code, meta.latency_ms, len(values))
    return values, meta


class EmbeddingProvider:
    """
    Text -> fixed-length vector adapter.

    embed() never raises for provider problems; it returns Ok(EmbeddingVector)
    or Err(EmbeddingError) and the caller branches on it.
    """

    def __init__(
        self,
        *,
        api_key: str | None = GEMINI_API_KEY,
        base_url: str = GEMINI_BASE_URL,
        api_version: str = GEMINI_API_VERSION,
        model: str = EMBEDDINGS_MODEL,
        dimension: int = EMBEDDING_DIMENSION,
        max_input_chars: int = EMBEDDING_MAX_INPUT_CHARS,
        timeout_s: float = AI_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
        log_payloads: bool = AI_LOG_PAYLOADS,
        batch_concurrency: int = 4,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.api_version = api_version
        self.model = model
        self.dimension = dimension
        self.max_input_chars = max_input_chars
        self.timeout_s = timeout_s
        self.client = client
        self.log_payloads = log_payloads
        self.batch_concurrency = max(1, int(batch_concurrency))

    async def _request(self, text: str, task_type: str) -> list[float]:
        values, _meta = await gemini_embed_content(
            api_key=self.api_key,
            base_url=self.base_url,
            api_version=self.api_version,
            model=self.model,
            text=text,
            task_type=task_type,
            output_dimensionality=self.dimension,
            timeout_s=self.timeout_s,
            client=self.client,
            log_payloads=self.log_payloads,
        )
        return values

    async def embed(self, text: str, task_type: str = TASK_RETRIEVAL_QUERY) -> Result[EmbeddingVector]:
        norm = normalize_text(text)
        if not norm:
            return Err(InvalidEmbeddingInput())

        clipped = truncate_head(norm, self.max_input_chars)
        truncated = len(clipped) < len(norm)
        if truncated:
            logger.info("Embedding input truncated from %s to %s chars", len(norm), len(clipped))

        try:
            raw = await self._request(clipped, task_type)
        except EmbeddingError as e:
            logger.error("Embedding generation failed (%s): %s", e.code, e.message)
            return Err(e)

        values, repaired = repair_dimension(raw, self.dimension)
        if repaired:
            logger.warning(
                "Expected %s embedding dimensions but got %s; %s",
                self.dimension,
                len(raw),
                "padding with zeros" if len(raw) < self.dimension else "truncating",
            )
        return Ok(
            EmbeddingVector(
                values=values,
                model=self.model,
                task_type=task_type,
                truncated=truncated,
                repaired=repaired,
                original_dimension=len(raw),
            )
        )

    async def embed_batch(
        self, texts: list[str], task_type: str = TASK_RETRIEVAL_QUERY
    ) -> list[Result[EmbeddingVector]]:
        """
        Embed several texts, one result per input in input order.

        Each text is an independent embed() call, at most `batch_concurrency`
        in flight; one failing text does not fail the others.
        """
        if not texts:
            return []
        gate = asyncio.Semaphore(self.batch_concurrency)

        async def one(text: str) -> Result[EmbeddingVector]:
            async with gate:
                return await self.embed(text, task_type)

        return list(await asyncio.gather(*(one(t) for t in texts)))

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
