"""
Indexing Service
Parse -> chunk per page -> embed -> upsert into the document's collection.
"""
import os
from typing import Optional
import structlog

from app.config import Settings, get_settings
from app.models.schemas import IndexResult
from app.services.chunking_service import ChunkingService, get_chunking_service
from app.services.document_parser import DocumentParser, get_document_parser
from app.services.embedding_service import EmbeddingService, get_embedding_service
from app.services.vector_store import VectorStore, get_collection_name, get_vector_store

logger = structlog.get_logger()


class IndexingService:
    """Maintains the collection lifecycle of uploaded PDFs."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        document_parser: Optional[DocumentParser] = None,
        chunking_service: Optional[ChunkingService] = None,
        embedding_service: Optional[EmbeddingService] = None,
        vector_store: Optional[VectorStore] = None
    ):
        self.settings = settings or get_settings()
        self.document_parser = document_parser or get_document_parser()
        self.chunking_service = chunking_service or get_chunking_service()
        self.embedding_service = embedding_service or get_embedding_service()
        self.vector_store = vector_store or get_vector_store()

    def find_upload(self, document_id: str) -> Optional[str]:
        """Locate the uploaded file whose name (without extension) is the document id."""
        upload_dir = self.settings.upload_dir
        if not os.path.isdir(upload_dir):
            return None
        for name in sorted(os.listdir(upload_dir)):
            if os.path.splitext(name)[0] == document_id:
                return os.path.join(upload_dir, name)
        return None

    async def index_document(
        self,
        document_id: str,
        file_path: str,
        file_name: str
    ) -> IndexResult:
        """
        Index every non-empty page of a PDF.

        Args:
            document_id: Document the collection belongs to
            file_path: Local path of the PDF
            file_name: Display name used in citations

        Returns:
            IndexResult with page counts

        Raises:
            ValueError: If the PDF has no extractable text
        """
        logger.info("Stage: Parsing PDF pages...", document_id=document_id, file_name=file_name)
        pages = await self.document_parser.parse_pages(file_path)

        logger.info("Stage: Building page chunks...", pages=len(pages))
        chunks = self.chunking_service.build_page_chunks(document_id, file_name, pages)
        if not chunks:
            raise ValueError("No chunks extracted from document")

        logger.info(f"Stage: Generating vector embeddings for {len(chunks)} pages...")
        embeddings = await self.embedding_service.embed_texts([c.content for c in chunks])

        logger.info("Stage: Storing vectors in Pinecone...")
        collection = await self.vector_store.get_or_create_collection(document_id)
        await collection.upsert(
            ids=[c.id for c in chunks],
            embeddings=embeddings,
            documents=[c.content for c in chunks],
            metadatas=[c.metadata for c in chunks],
        )

        logger.info("Stage: Indexing complete!", document_id=document_id, pages=len(chunks))
        return IndexResult(
            document_id=document_id,
            collection_name=collection.name,
            total_pages=max(p.page_number for p in pages),
            indexed_pages=len(chunks),
        )

    async def delete_document(self, document_id: str) -> bool:
        """Remove a document's collection. False if it did not exist."""
        return await self.vector_store.delete_collection(document_id)

    async def collection_info(self, document_id: str) -> dict:
        name = get_collection_name(document_id)
        count = await self.vector_store.count(name)
        return {"document_id": document_id, "collection_name": name, "chunk_count": count}


# Singleton instance
_indexing_service: Optional[IndexingService] = None


def get_indexing_service() -> IndexingService:
    """Get singleton indexing service instance."""
    global _indexing_service
    if _indexing_service is None:
        _indexing_service = IndexingService()
    return _indexing_service
