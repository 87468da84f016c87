"""
Retriever
Embeds a question and returns the nearest pages of one document.
"""
from typing import List, Optional
import structlog

from app.models.schemas import PromptContext, RetrievalResult
from app.services.embedding_service import EmbeddingService, get_embedding_service
from app.services.vector_store import VectorStore, get_vector_store

logger = structlog.get_logger()


class Retriever:
    """Query embedding + vector search for a single document collection."""

    def __init__(
        self,
        embedding_service: Optional[EmbeddingService] = None,
        vector_store: Optional[VectorStore] = None
    ):
        self.embedding_service = embedding_service or get_embedding_service()
        self.vector_store = vector_store or get_vector_store()

    async def retrieve(
        self,
        document_id: str,
        query_text: str,
        top_k: int
    ) -> List[RetrievalResult]:
        """
        Retrieve the pages most similar to ``query_text``.

        Results keep the store's order (nearest first) and are never padded:
        a sparse document returns fewer than ``top_k`` results. Rows with a
        missing document, metadata, distance or page number are skipped.

        Args:
            document_id: Document whose collection is searched
            query_text: User's question
            top_k: Maximum number of results (>= 1)

        Returns:
            List of RetrievalResult objects

        Raises:
            ValueError: If top_k < 1
            DocumentNotFoundError: If the document has no collection
        """
        if top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {top_k}")

        collection = await self.vector_store.get_collection(document_id)
        query_embedding = await self.embedding_service.embed_query(query_text)

        logger.info("Querying collection", collection=collection.name, top_k=top_k)
        raw = await collection.query(query_embeddings=[query_embedding], n_results=top_k)

        documents = raw.documents[0] if raw.documents else []
        metadatas = raw.metadatas[0] if raw.metadatas else []
        distances = raw.distances[0] if raw.distances else []

        results: List[RetrievalResult] = []
        skipped = 0
        for i in range(len(documents)):
            content = documents[i]
            metadata = metadatas[i] if i < len(metadatas) else None
            distance = distances[i] if i < len(distances) else None

            if content is None or metadata is None or distance is None:
                skipped += 1
                continue
            if metadata.get("page_number") is None:
                skipped += 1
                continue

            results.append(RetrievalResult(
                page_number=int(metadata["page_number"]),
                file_name=metadata.get("file_name") or "",
                content=content,
                snippet=metadata.get("snippet") or "",
                score=1.0 - distance,
                metadata=metadata,
            ))

        if skipped:
            logger.warning("Skipped incomplete retrieval rows", skipped=skipped)

        logger.info("Retrieval complete", results=len(results))
        return results[:top_k]


def format_contexts(results: List[RetrievalResult]) -> List[PromptContext]:
    """Reduce retrieval results to prompt contexts, same order, no merging."""
    return [
        PromptContext(page_number=result.page_number, content=result.content)
        for result in results
    ]


# Singleton instance
_retriever: Optional[Retriever] = None


def get_retriever() -> Retriever:
    """Get singleton retriever instance."""
    global _retriever
    if _retriever is None:
        _retriever = Retriever()
    return _retriever
