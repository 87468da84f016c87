"""
Error taxonomy for retrieval, generation and evaluation.
"""
from typing import Optional


class RAGError(Exception):
    """Base class for errors raised by the RAG services."""


class DocumentNotFoundError(RAGError):
    """The referenced document has no collection in the vector store."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"No indexed collection for document '{document_id}'")


class UpstreamError(RAGError):
    """An embedding, generation or vector store call failed."""

    def __init__(self, provider: str, message: str, details: Optional[str] = None):
        self.provider = provider
        self.details = details
        super().__init__(f"{provider} call failed: {message}")


class UpstreamTimeoutError(UpstreamError):
    """An upstream call did not finish within its deadline."""

    def __init__(self, provider: str, timeout: float):
        self.timeout = timeout
        super().__init__(provider, f"timed out after {timeout:.1f}s")


class VectorMetricError(RAGError):
    """The vector index reports a distance metric we cannot convert to similarity."""


class RAGPipelineError(RAGError):
    """Pipeline-level failure tag; the original error is kept as ``cause``."""

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        self.cause = cause
        super().__init__(f"RAG pipeline failed during {stage}: {cause}")


class EvaluationError(RAGError):
    """The judge model returned output that could not be parsed."""
