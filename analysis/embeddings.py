"""
Embedding service client

Batched text -> vector calls against the Gemini embedding model. Vectors come
back in input order. A failed batch raises EmbeddingError naming the batch;
there is no partial-batch recovery.
"""

import time
from typing import Any, List, Optional, Sequence

from google.genai import types

from analysis.gemini import call_with_retry, create_client
from config import DEFAULT_EMBEDDING_BATCH_SIZE, get_logger
from exceptions import EmbeddingError
from pipeline.protocols import MetricsCollector, NullMetrics

logger = get_logger(__name__).bind(component="embeddings")

DEFAULT_EMBEDDING_MODEL = "gemini-embedding-001"


class EmbeddingClient:
    """Batch embedding calls for response texts"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[Any] = None,
        model: str = DEFAULT_EMBEDDING_MODEL,
        batch_size: int = DEFAULT_EMBEDDING_BATCH_SIZE,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Initialize embedding client

        Args:
            api_key: Gemini API key (defaults to env vars)
            client: Pre-built genai.Client (or compatible fake)
            model: Embedding model name
            batch_size: Texts per request
            metrics: Metrics collector (defaults to no-op)
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        self.client = client if client is not None else create_client(api_key)
        self.model = model
        self.batch_size = batch_size
        self.metrics = metrics or NullMetrics()

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed texts, one vector per text in input order

        Raises:
            EmbeddingError: If any batch fails or returns the wrong number of vectors
        """
        if not texts:
            return []

        vectors: List[List[float]] = []
        batches = [texts[i : i + self.batch_size] for i in range(0, len(texts), self.batch_size)]

        for batch_number, batch in enumerate(batches, start=1):
            vectors.extend(await self._embed_batch(list(batch), batch_number))

        logger.info("embedded texts", texts=len(texts), batches=len(batches), model=self.model)
        return vectors

    async def _embed_batch(self, batch: List[str], batch_number: int) -> List[List[float]]:
        start_time = time.time()

        try:
            response = await call_with_retry(
                lambda: self.client.aio.models.embed_content(
                    model=self.model,
                    contents=batch,
                    config=types.EmbedContentConfig(task_type="CLUSTERING"),
                ),
                service="embeddings",
            )
        except Exception as e:
            self.metrics.embedding_requests.labels(status="error").inc()
            self.metrics.record_error(component="embeddings", error=e)
            logger.error(
                "embedding batch failed",
                batch_number=batch_number,
                batch_size=len(batch),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise EmbeddingError(
                f"Embedding batch {batch_number} failed",
                batch_number=batch_number,
                model=self.model,
                original_error=e,
            ) from e

        embeddings = getattr(response, "embeddings", None) or []
        if len(embeddings) != len(batch):
            self.metrics.embedding_requests.labels(status="error").inc()
            raise EmbeddingError(
                f"Embedding batch {batch_number} returned {len(embeddings)} vectors for {len(batch)} texts",
                batch_number=batch_number,
                model=self.model,
            )

        self.metrics.embedding_requests.labels(status="success").inc()
        logger.debug(
            "embedding batch complete",
            batch_number=batch_number,
            batch_size=len(batch),
            duration_seconds=round(time.time() - start_time, 2),
        )
        return [list(e.values) for e in embeddings]
