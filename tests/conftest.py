"""
Shared Test Fixtures for RAG Pipeline Tests

This file contains:
- Environment defaults so settings load without a .env file
- In-memory doubles for the embedding service, vector store and generator
- FastAPI TestClient wired to the doubles
- Sample retrieval data for document "doc-42"
"""
import os
import sys
from typing import Generator, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("PINECONE_API_KEY", "test-pinecone-key")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")

from fastapi.testclient import TestClient

from app.config import Settings
from app.errors import DocumentNotFoundError
from app.models.schemas import QueryResult, TokenUsage
from app.services.rag_pipeline import RAGPipeline
from app.services.retriever import Retriever
from app.services.vector_store import get_collection_name


# ═══════════════════════════════════════════════════════════════
# TEST DOUBLES
# ═══════════════════════════════════════════════════════════════

class FakeEmbeddingService:
    """Returns a constant vector and records every query."""

    def __init__(self):
        self.queries: List[str] = []
        self.batches: List[List[str]] = []

    async def embed_query(self, query: str) -> List[float]:
        self.queries.append(query)
        return [0.1] * 8

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        self.batches.append(list(texts))
        return [[0.1] * 8 for _ in texts]


class FakeCollection:
    """Collection returning a canned QueryResult truncated to n_results."""

    def __init__(self, document_id: str, raw: QueryResult):
        self.document_id = document_id
        self.name = get_collection_name(document_id)
        self.raw = raw
        self.queries = []
        self.upserts = []

    async def query(self, query_embeddings, n_results):
        self.queries.append(n_results)
        return QueryResult(
            ids=[row[:n_results] for row in self.raw.ids],
            documents=[row[:n_results] for row in self.raw.documents],
            metadatas=[row[:n_results] for row in self.raw.metadatas],
            distances=[row[:n_results] for row in self.raw.distances],
        )

    async def upsert(self, ids, embeddings, documents, metadatas):
        self.upserts.append({
            "ids": ids,
            "embeddings": embeddings,
            "documents": documents,
            "metadatas": metadatas,
        })
        return len(ids)

    async def count(self):
        return len(self.raw.documents[0]) if self.raw.documents else 0


class FakeVectorStore:
    """Dict of document_id -> FakeCollection."""

    def __init__(self, collections: Optional[dict] = None):
        self.collections = collections or {}
        self.deleted: List[str] = []

    async def collection_exists(self, document_id: str) -> bool:
        return document_id in self.collections

    async def get_collection(self, document_id: str):
        if document_id not in self.collections:
            raise DocumentNotFoundError(document_id)
        return self.collections[document_id]

    async def get_or_create_collection(self, document_id: str):
        if document_id not in self.collections:
            self.collections[document_id] = FakeCollection(document_id, QueryResult())
        return self.collections[document_id]

    async def delete_collection(self, document_id: str) -> bool:
        if document_id not in self.collections:
            return False
        del self.collections[document_id]
        self.deleted.append(document_id)
        return True

    async def count(self, collection_name: str) -> int:
        for collection in self.collections.values():
            if collection.name == collection_name:
                return await collection.count()
        return 0


class FakeGeneration:
    """Mirrors GenerationResult: usage is only available once drained."""

    def __init__(self, parts: List[str], usage: Optional[TokenUsage], model: str):
        self.model = model
        self.parts = parts
        self._usage = usage
        self.drained = False
        self.text_stream = self._iterate()

    async def _iterate(self):
        for part in self.parts:
            yield part
        self.drained = True

    async def usage(self):
        if not self.drained:
            async for _ in self.text_stream:
                pass
        return self._usage


class FakeGenerator:
    """Records generate() calls; replies with queued responses in order."""

    def __init__(
        self,
        responses: Optional[List[List[str]]] = None,
        usage: Optional[TokenUsage] = None,
        model: str = "test-model",
        error: Optional[Exception] = None
    ):
        self.responses = responses or [["Refunds are accepted within 30 days ", "(Page 3)."]]
        self.usage = usage if usage is not None else TokenUsage(input_tokens=120, output_tokens=30)
        self.model = model
        self.error = error
        self.calls = []

    async def generate(self, user_prompt, system_prompt, config=None, history=None):
        self.calls.append({
            "user_prompt": user_prompt,
            "system_prompt": system_prompt,
            "config": config,
            "history": history,
        })
        if self.error:
            raise self.error
        parts = self.responses[min(len(self.calls), len(self.responses)) - 1]
        return FakeGeneration(parts, self.usage, self.model)


def make_query_result(rows) -> QueryResult:
    """rows: (page_number, content, distance) tuples, nearest first."""
    return QueryResult(
        ids=[[f"pdf_doc_page_{page}" for page, _, _ in rows]],
        documents=[[content for _, content, _ in rows]],
        metadatas=[[
            {
                "document_id": "doc-42",
                "file_name": "policies.pdf",
                "page_number": page,
                "snippet": content[:80],
            }
            for page, content, _ in rows
        ]],
        distances=[[distance for _, _, distance in rows]],
    )


# ═══════════════════════════════════════════════════════════════
# TEST DATA FIXTURES
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def settings() -> Settings:
    """Explicit settings, independent of the environment."""
    return Settings(
        openai_api_key="test-openai-key",
        pinecone_api_key="test-pinecone-key",
        supabase_url="https://test.supabase.co",
        supabase_service_key="test-service-key",
        pinecone_index="test-index",
        llm_model="test-model",
        top_k=6,
        upstream_timeout_seconds=5.0,
    )


@pytest.fixture
def doc42_rows():
    """Document doc-42, pages 1-5, ordered by distance to the refund question."""
    return [
        (3, "Refund policy: purchases can be refunded within 30 days.", 0.09),
        (1, "Introduction to our customer service policies.", 0.22),
        (5, "Contact support to start a refund or exchange.", 0.35),
        (2, "Shipping times vary by region.", 0.52),
        (4, "Warranty coverage lasts one year.", 0.61),
    ]


@pytest.fixture
def fake_embeddings() -> FakeEmbeddingService:
    return FakeEmbeddingService()


@pytest.fixture
def fake_vector_store(doc42_rows) -> FakeVectorStore:
    return FakeVectorStore({
        "doc-42": FakeCollection("doc-42", make_query_result(doc42_rows)),
        "doc-empty": FakeCollection("doc-empty", QueryResult(ids=[[]], documents=[[]], metadatas=[[]], distances=[[]])),
    })


@pytest.fixture
def fake_generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def retriever(fake_embeddings, fake_vector_store) -> Retriever:
    return Retriever(embedding_service=fake_embeddings, vector_store=fake_vector_store)


@pytest.fixture
def pipeline(retriever, fake_generator, settings) -> RAGPipeline:
    return RAGPipeline(retriever=retriever, generator=fake_generator, settings=settings)


@pytest.fixture
def make_generator():
    """Factory for generators with custom responses."""
    return FakeGenerator


@pytest.fixture
def make_collection():
    """Factory for collections from (page, content, distance) rows."""
    def _make(document_id, rows=None, raw=None):
        return FakeCollection(document_id, raw if raw is not None else make_query_result(rows))
    return _make


@pytest.fixture
def make_vector_store():
    return FakeVectorStore


# ═══════════════════════════════════════════════════════════════
# MOCK FIXTURES
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def mock_chat_service():
    """Chat history accessor with no stored turns."""
    service = Mock()
    service.get_recent_turns = AsyncMock(return_value=[])
    service.save_message = AsyncMock(return_value={})
    return service


@pytest.fixture
def mock_credit_service():
    """Gateway spend goes from 1.00 to 1.25 across a call."""
    service = Mock()
    service.fetch_total_used = AsyncMock(side_effect=[1.0, 1.25])
    service.log_usage = AsyncMock(return_value=None)
    return service


# ═══════════════════════════════════════════════════════════════
# FASTAPI CLIENT FIXTURES
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def client(
    pipeline,
    retriever,
    fake_generator,
    fake_vector_store,
    mock_chat_service,
    mock_credit_service,
    settings,
) -> Generator[TestClient, None, None]:
    """FastAPI test client with every service replaced by a double."""
    from app.main import app
    from app.services.chat_service import get_chat_service
    from app.services.credit_service import get_credit_service
    from app.services.evaluator import RAGEvaluator, get_rag_evaluator
    from app.services.rag_pipeline import get_rag_pipeline
    from app.services.vector_store import get_vector_store

    evaluator = RAGEvaluator(retriever=retriever, generator=fake_generator, settings=settings)

    app.dependency_overrides[get_rag_pipeline] = lambda: pipeline
    app.dependency_overrides[get_rag_evaluator] = lambda: evaluator
    app.dependency_overrides[get_vector_store] = lambda: fake_vector_store
    app.dependency_overrides[get_chat_service] = lambda: mock_chat_service
    app.dependency_overrides[get_credit_service] = lambda: mock_credit_service

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
