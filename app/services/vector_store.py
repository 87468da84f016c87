"""
Vector Store Service
Stores page vectors in Pinecone, one namespace ("collection") per document.
"""
import asyncio
from typing import List, Optional, Dict, Any
import structlog
from pinecone import Pinecone
from pinecone.exceptions import PineconeException
from tenacity import retry, stop_after_attempt, wait_exponential

from app.config import Settings, get_settings
from app.errors import (
    DocumentNotFoundError,
    UpstreamError,
    UpstreamTimeoutError,
    VectorMetricError,
)
from app.models.schemas import QueryResult

logger = structlog.get_logger()


def get_collection_name(document_id: str) -> str:
    """Collection (namespace) name for a document."""
    return f"pdf_{document_id}"


class CollectionHandle:
    """A single document's collection of page vectors."""

    def __init__(self, store: "VectorStore", document_id: str):
        self.store = store
        self.document_id = document_id
        self.name = get_collection_name(document_id)

    async def query(
        self,
        query_embeddings: List[List[float]],
        n_results: int
    ) -> QueryResult:
        """
        Nearest-neighbour search, nearest first.

        Distances are cosine distances in [0, 2]; Pinecone reports cosine
        similarity, so each score is reported back as ``1 - score``.
        """
        result = QueryResult()
        for embedding in query_embeddings:
            response = await self.store._call(
                self.store.index.query,
                namespace=self.name,
                vector=embedding,
                top_k=n_results,
                include_metadata=True
            )

            ids, documents, metadatas, distances = [], [], [], []
            for match in response.matches:
                metadata = dict(match.metadata) if match.metadata else None
                content = metadata.pop("content", None) if metadata else None
                ids.append(match.id)
                documents.append(content)
                metadatas.append(metadata)
                distances.append(None if match.score is None else 1.0 - match.score)

            result.ids.append(ids)
            result.documents.append(documents)
            result.metadatas.append(metadatas)
            result.distances.append(distances)

        return result

    async def upsert(
        self,
        ids: List[str],
        embeddings: List[List[float]],
        documents: List[str],
        metadatas: List[Dict[str, Any]]
    ) -> int:
        """Insert or replace vectors by id. Returns the number written."""
        return await self.store.upsert(self.name, ids, embeddings, documents, metadatas)

    async def count(self) -> int:
        return await self.store.count(self.name)


class VectorStore:
    """Manages per-document collections in a single Pinecone index."""

    SUPPORTED_METRICS = ("cosine",)
    UPSERT_BATCH_SIZE = 100

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[Pinecone] = None
    ):
        self.settings = settings or get_settings()
        self.pc = client or Pinecone(api_key=self.settings.pinecone_api_key)
        self.index = self.pc.Index(self.settings.pinecone_index)
        self.metric = self._read_metric()

        logger.info(
            "Vector store initialized",
            index=self.settings.pinecone_index,
            metric=self.metric
        )

    def _read_metric(self) -> str:
        """Resolve the index distance metric once and refuse unsupported ones."""
        description = self.pc.describe_index(self.settings.pinecone_index)
        metric = str(description.metric).lower()
        expected = self.settings.vector_metric.lower()

        if metric != expected or metric not in self.SUPPORTED_METRICS:
            raise VectorMetricError(
                f"Index '{self.settings.pinecone_index}' uses metric '{metric}', "
                f"expected one of {self.SUPPORTED_METRICS} (configured: '{expected}')"
            )
        return metric

    async def _call(self, fn, *args, **kwargs):
        """Run a blocking Pinecone call in a worker thread under a deadline."""
        timeout = self.settings.upstream_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError("vector store", timeout) from e
        except PineconeException as e:
            raise UpstreamError("vector store", type(e).__name__, details=str(e)) from e

    async def count(self, collection_name: str) -> int:
        stats = await self._call(self.index.describe_index_stats)
        summary = (stats.namespaces or {}).get(collection_name)
        if not summary:
            return 0
        return int(getattr(summary, "vector_count", 0) or 0)

    async def collection_exists(self, document_id: str) -> bool:
        return await self.count(get_collection_name(document_id)) > 0

    def create_collection(self, document_id: str) -> CollectionHandle:
        # Namespaces materialize on first upsert.
        return CollectionHandle(self, document_id)

    async def get_collection(self, document_id: str) -> CollectionHandle:
        """
        Get an existing collection.

        Raises:
            DocumentNotFoundError: If the document has no indexed pages
        """
        if not await self.collection_exists(document_id):
            raise DocumentNotFoundError(document_id)
        return CollectionHandle(self, document_id)

    async def get_or_create_collection(self, document_id: str) -> CollectionHandle:
        if await self.collection_exists(document_id):
            return CollectionHandle(self, document_id)
        logger.info("Creating collection", collection=get_collection_name(document_id))
        return self.create_collection(document_id)

    async def delete_collection(self, document_id: str) -> bool:
        """
        Delete all vectors of a document.

        Returns:
            False if the document had no collection
        """
        name = get_collection_name(document_id)
        if not await self.collection_exists(document_id):
            logger.warning("Collection not found for delete", collection=name)
            return False

        await self._call(self.index.delete, namespace=name, delete_all=True)
        logger.info("Collection deleted", collection=name)
        return True

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True
    )
    async def _upsert_batch(self, collection_name: str, batch: List[Dict[str, Any]]):
        await self._call(self.index.upsert, vectors=batch, namespace=collection_name)

    async def upsert(
        self,
        collection_name: str,
        ids: List[str],
        embeddings: List[List[float]],
        documents: List[str],
        metadatas: List[Dict[str, Any]]
    ) -> int:
        if not (len(ids) == len(embeddings) == len(documents) == len(metadatas)):
            raise ValueError("ids, embeddings, documents and metadatas must be the same length")

        logger.info("Upserting vectors", collection=collection_name, count=len(ids))

        vectors = []
        for vector_id, embedding, content, metadata in zip(ids, embeddings, documents, metadatas):
            # Pinecone caps metadata at 40KB per vector
            if len(content) > self.settings.max_content_chars:
                content = content[:self.settings.max_content_chars] + "..."
            vectors.append({
                "id": vector_id,
                "values": embedding,
                "metadata": {**metadata, "content": content},
            })

        total_upserted = 0
        for i in range(0, len(vectors), self.UPSERT_BATCH_SIZE):
            batch = vectors[i:i + self.UPSERT_BATCH_SIZE]
            await self._upsert_batch(collection_name, batch)
            total_upserted += len(batch)

            logger.info(
                "Batch upserted",
                batch_num=i // self.UPSERT_BATCH_SIZE + 1,
                count=len(batch)
            )

        logger.info("Vectors upserted successfully", total=total_upserted, collection=collection_name)
        return total_upserted


# Singleton instance
_vector_store: Optional[VectorStore] = None


def get_vector_store() -> VectorStore:
    """Get singleton vector store instance."""
    global _vector_store
    if _vector_store is None:
        _vector_store = VectorStore()
    return _vector_store
