"""
Embedding Service
Generates vector embeddings through an OpenAI-compatible embeddings API.
The same model and dimensionality are used for indexing and querying.
"""
from typing import List, Optional
import structlog
from openai import AsyncOpenAI, APIError, APITimeoutError
from tenacity import retry, stop_after_attempt, wait_exponential

from app.config import Settings, get_settings
from app.errors import UpstreamError, UpstreamTimeoutError

logger = structlog.get_logger()


class EmbeddingService:
    """Generates embeddings for page texts and search queries."""

    # Maximum tokens per request (model limit)
    MAX_TOKENS_PER_REQUEST = 8191
    # Batch size for embedding requests
    BATCH_SIZE = 100

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[AsyncOpenAI] = None
    ):
        self.settings = settings or get_settings()
        self.client = client or AsyncOpenAI(
            api_key=self.settings.openai_api_key,
            base_url=self.settings.openai_base_url,
            timeout=self.settings.upstream_timeout_seconds,
            max_retries=0,
        )

    def _truncate(self, text: str) -> str:
        # Rough estimate: 4 chars per token
        max_chars = self.MAX_TOKENS_PER_REQUEST * 4
        if len(text) > max_chars:
            logger.warning("Text truncated for embedding", original_length=len(text))
            return text[:max_chars]
        return text

    async def _create(self, inputs):
        try:
            return await self.client.embeddings.create(
                model=self.settings.embedding_model,
                input=inputs,
                dimensions=self.settings.embedding_dimensions
            )
        except APITimeoutError as e:
            raise UpstreamTimeoutError("embedding", self.settings.upstream_timeout_seconds) from e
        except APIError as e:
            raise UpstreamError("embedding", "embeddings request failed", details=str(e)) from e

    async def embed_text(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector
        """
        response = await self._create(self._truncate(text))
        return response.data[0].embedding

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True
    )
    async def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        response = await self._create(batch)
        # Extract embeddings in input order
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts in batches.
        Batches are retried with backoff; used at indexing time only.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors, aligned with ``texts``
        """
        logger.info("Generating embeddings", count=len(texts))

        all_embeddings = []

        for i in range(0, len(texts), self.BATCH_SIZE):
            batch = [self._truncate(t) for t in texts[i:i + self.BATCH_SIZE]]

            try:
                all_embeddings.extend(await self._embed_batch(batch))
                logger.info(
                    "Batch embedded",
                    batch_num=i // self.BATCH_SIZE + 1,
                    batch_size=len(batch)
                )
            except UpstreamError as e:
                logger.error("Batch embedding failed", error=str(e))
                raise

        logger.info(
            "Embeddings complete",
            total=len(all_embeddings),
            dimensions=self.settings.embedding_dimensions
        )

        return all_embeddings

    async def embed_query(self, query: str) -> List[float]:
        """
        Generate embedding for a search query. Not retried.

        Args:
            query: User's question

        Returns:
            Query embedding vector
        """
        return await self.embed_text(query)


# Singleton instance
_embedding_service: Optional[EmbeddingService] = None


def get_embedding_service() -> EmbeddingService:
    """Get singleton embedding service instance."""
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
    return _embedding_service
