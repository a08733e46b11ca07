from __future__ import annotations

import logging
from typing import List, Optional

from openai import APIConnectionError, APITimeoutError, OpenAI, OpenAIError, RateLimitError
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..retrieval.errors import ProviderUnavailableError


DEFAULT_MODEL = "text-embedding-3-small"
DEFAULT_DIMENSIONS = 1536
DEFAULT_MAX_CHARS = 8000

logger = logging.getLogger("knowledge_engine.services.embedding")


class OpenAIEmbeddingGenerator:
    """Embedding generator backed by the OpenAI embeddings endpoint."""

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: str = DEFAULT_MODEL,
        dimensions: Optional[int] = DEFAULT_DIMENSIONS,
        max_chars: int = DEFAULT_MAX_CHARS,
        api_key: Optional[str] = None,
    ):
        self._openai_client = client
        self._api_key = api_key
        self._model = model
        self.dimensions = dimensions
        self.max_chars = max_chars
        self.logger = logger

    @property
    def model(self) -> str:
        return self._model

    def _client(self) -> OpenAI:
        if self._openai_client is None:
            self._openai_client = OpenAI(api_key=self._api_key) if self._api_key else OpenAI()
        return self._openai_client

    # Retries must fit inside the semantic search timeout.
    @retry(
        retry=retry_if_exception_type((RateLimitError, APIConnectionError, APITimeoutError)),
        wait=wait_exponential(multiplier=0.25, min=0.25, max=2),
        stop=stop_after_attempt(3),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _create(self, **kwargs):
        return self._client().embeddings.create(**kwargs)

    def generate(self, text: str) -> List[float]:
        text = (text or "").strip()[: self.max_chars]
        if not text:
            raise ProviderUnavailableError("Cannot embed empty text")
        kwargs = {"model": self._model, "input": text}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions
        try:
            response = self._create(**kwargs)
        except OpenAIError as exc:
            self.logger.warning("Embedding request failed", extra={"model": self._model, "error": str(exc)})
            raise ProviderUnavailableError(f"OpenAI embedding request failed: {exc}") from exc
        if not response.data:
            raise ProviderUnavailableError("OpenAI returned no embedding")
        return list(response.data[0].embedding)
