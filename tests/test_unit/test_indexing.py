"""
Unit tests for PDF parsing, page chunking and the indexing service.
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest

from app.models.schemas import PageText
from app.services.chunking_service import ChunkingService
from app.services.document_parser import DocumentParser
from app.services.indexing_service import IndexingService


def _element(text, page_number=None):
    return SimpleNamespace(text=text, metadata=SimpleNamespace(page_number=page_number))


class TestDocumentParser:

    def test_group_by_page(self):
        elements = [
            _element("Title", 1),
            _element("Body of page one"),
            _element("Refund policy", 3),
            _element("   ", 2),
            _element("30 days", 3),
        ]

        pages = DocumentParser().group_by_page(elements)

        assert [p.page_number for p in pages] == [1, 3]
        assert pages[0].text == "Title\nBody of page one"
        assert pages[1].text == "Refund policy\n30 days"

    @pytest.mark.asyncio
    async def test_falls_back_to_fast_strategy(self):
        calls = []

        def fake_partition(**kwargs):
            calls.append(kwargs["strategy"])
            if kwargs["strategy"] == "auto":
                raise RuntimeError("layout model unavailable")
            return [_element("Only page", 1)]

        with patch("app.services.document_parser.partition", side_effect=fake_partition):
            pages = await DocumentParser().parse_pages("/tmp/doc.pdf")

        assert calls == ["auto", "fast"]
        assert pages == [PageText(page_number=1, text="Only page")]

    @pytest.mark.asyncio
    async def test_image_only_pdf_raises(self):
        with patch("app.services.document_parser.partition", return_value=[_element("", 1)]):
            with pytest.raises(ValueError, match="No text could be extracted"):
                await DocumentParser().parse_pages("/tmp/scan.pdf")


class TestChunkingService:

    def test_one_chunk_per_non_empty_page(self, settings):
        pages = [
            PageText(page_number=1, text="Intro"),
            PageText(page_number=2, text="  "),
            PageText(page_number=3, text="R" * 100),
        ]

        chunks = ChunkingService(settings).build_page_chunks("doc-7", "manual.pdf", pages)

        assert [c.id for c in chunks] == ["pdf_doc-7_page_1", "pdf_doc-7_page_3"]
        assert chunks[0].metadata["snippet"] == "Intro"
        assert chunks[1].metadata["snippet"] == "R" * settings.snippet_length + "..."
        assert chunks[1].metadata["file_name"] == "manual.pdf"
        assert chunks[1].metadata["page_number"] == 3
        assert chunks[1].metadata["document_id"] == "doc-7"


class TestIndexingService:

    @pytest.fixture
    def parser(self):
        parser = Mock()
        parser.parse_pages = AsyncMock(return_value=[
            PageText(page_number=1, text="Intro"),
            PageText(page_number=4, text="Warranty"),
        ])
        return parser

    @pytest.fixture
    def indexing(self, settings, parser, fake_embeddings, make_vector_store):
        return IndexingService(
            settings=settings,
            document_parser=parser,
            chunking_service=ChunkingService(settings),
            embedding_service=fake_embeddings,
            vector_store=make_vector_store(),
        )

    @pytest.mark.asyncio
    async def test_index_document(self, indexing, fake_embeddings):
        result = await indexing.index_document("doc-9", "/tmp/doc-9.pdf", "guide.pdf")

        assert result.collection_name == "pdf_doc-9"
        assert result.total_pages == 4
        assert result.indexed_pages == 2
        assert fake_embeddings.batches == [["Intro", "Warranty"]]

        upsert = indexing.vector_store.collections["doc-9"].upserts[0]
        assert upsert["ids"] == ["pdf_doc-9_page_1", "pdf_doc-9_page_4"]
        assert upsert["documents"] == ["Intro", "Warranty"]

    @pytest.mark.asyncio
    async def test_delete_document(self, indexing):
        await indexing.index_document("doc-9", "/tmp/doc-9.pdf", "guide.pdf")

        assert await indexing.delete_document("doc-9") is True
        assert await indexing.delete_document("doc-9") is False

    @pytest.mark.asyncio
    async def test_collection_info(self, settings, parser, fake_embeddings, fake_vector_store):
        indexing = IndexingService(
            settings=settings,
            document_parser=parser,
            chunking_service=ChunkingService(settings),
            embedding_service=fake_embeddings,
            vector_store=fake_vector_store,
        )

        info = await indexing.collection_info("doc-42")

        assert info == {"document_id": "doc-42", "collection_name": "pdf_doc-42", "chunk_count": 5}

    def test_find_upload(self, indexing, tmp_path):
        (tmp_path / "doc-9.pdf").write_bytes(b"%PDF-1.4")
        indexing.settings.upload_dir = str(tmp_path)

        assert indexing.find_upload("doc-9") == str(tmp_path / "doc-9.pdf")
        assert indexing.find_upload("doc-10") is None

    def test_find_upload_requires_exact_id(self, indexing, tmp_path):
        """doc-1 must not pick up the upload of doc-10."""
        (tmp_path / "doc-10.pdf").write_bytes(b"%PDF-1.4")
        indexing.settings.upload_dir = str(tmp_path)

        assert indexing.find_upload("doc-1") is None
        assert indexing.find_upload("doc-10") == str(tmp_path / "doc-10.pdf")
