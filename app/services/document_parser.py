"""
Document Parser Service
Extracts per-page text from PDFs using unstructured.io.
"""
from typing import Dict, List, Optional
import structlog

from unstructured.partition.auto import partition
from unstructured.documents.elements import Element

from app.models.schemas import PageText

logger = structlog.get_logger()


class DocumentParser:
    """Parses PDFs into page texts."""

    def _partition(self, file_path: str) -> List[Element]:
        kwargs = {
            "filename": file_path,
            "strategy": "auto",
        }
        try:
            return partition(**kwargs)
        except Exception as parse_error:
            logger.warning(
                "Primary parsing strategy failed, falling back to 'fast'",
                error=str(parse_error),
                path=file_path
            )
            # Text-only but very robust
            kwargs["strategy"] = "fast"
            return partition(**kwargs)

    def group_by_page(self, elements: List[Element]) -> List[PageText]:
        """
        Join element texts per page number. Elements without a page number
        belong to the page before them; blank pages are dropped.
        """
        texts: Dict[int, List[str]] = {}
        current_page = 1

        for el in elements:
            page_number = getattr(getattr(el, "metadata", None), "page_number", None)
            if page_number:
                current_page = page_number
            text = str(getattr(el, "text", "") or "").strip()
            if text:
                texts.setdefault(current_page, []).append(text)

        return [
            PageText(page_number=page, text="\n".join(parts))
            for page, parts in sorted(texts.items())
        ]

    async def parse_pages(self, file_path: str) -> List[PageText]:
        """
        Parse a PDF and return the text of every non-empty page.

        Args:
            file_path: Path to the PDF

        Returns:
            List of PageText ordered by page number

        Raises:
            ValueError: If no text could be extracted
        """
        logger.info("Parsing document", path=file_path)

        elements = self._partition(file_path)
        pages = self.group_by_page(elements)

        if not pages:
            raise ValueError(
                "No text could be extracted from the PDF. "
                "It may be empty or image-only."
            )

        logger.info(
            "Document parsed successfully",
            element_count=len(elements),
            page_count=len(pages)
        )
        return pages


# Singleton instance
_document_parser: Optional[DocumentParser] = None


def get_document_parser() -> DocumentParser:
    """Get singleton document parser instance."""
    global _document_parser
    if _document_parser is None:
        _document_parser = DocumentParser()
    return _document_parser
