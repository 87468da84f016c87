"""
Chunking Service
Turns page texts into page chunks with stable ids and citation metadata.
"""
from datetime import datetime, timezone
from typing import List, Optional
import structlog

from app.config import Settings, get_settings
from app.models.schemas import PageChunk, PageText
from app.services.vector_store import get_collection_name

logger = structlog.get_logger()


class ChunkingService:
    """One chunk per PDF page."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def get_chunk_id(self, document_id: str, page_number: int) -> str:
        # Re-indexing the same page replaces the same vector
        return f"{get_collection_name(document_id)}_page_{page_number}"

    def make_snippet(self, text: str) -> str:
        limit = self.settings.snippet_length
        if len(text) > limit:
            return text[:limit] + "..."
        return text

    def build_page_chunks(
        self,
        document_id: str,
        file_name: str,
        pages: List[PageText]
    ) -> List[PageChunk]:
        """
        Build one chunk per page.

        Args:
            document_id: Owning document
            file_name: Display file name for citations
            pages: Extracted page texts

        Returns:
            List of PageChunk objects in page order
        """
        created_at = datetime.now(timezone.utc).isoformat()

        chunks = []
        for page in pages:
            if not page.text.strip():
                continue
            chunks.append(PageChunk(
                id=self.get_chunk_id(document_id, page.page_number),
                content=page.text,
                page_number=page.page_number,
                metadata={
                    "document_id": document_id,
                    "file_name": file_name,
                    "page_number": page.page_number,
                    "snippet": self.make_snippet(page.text),
                    "created_at": created_at,
                },
            ))

        logger.info("Chunking complete", document_id=document_id, chunks=len(chunks))
        return chunks


# Singleton
_chunking_service: Optional[ChunkingService] = None


def get_chunking_service() -> ChunkingService:
    """Get singleton chunking service instance."""
    global _chunking_service
    if _chunking_service is None:
        _chunking_service = ChunkingService()
    return _chunking_service
