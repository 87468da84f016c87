"""
FastAPI Application
Chat, evaluation and document indexing APIs for PDF question answering.
"""
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import List, Optional
import structlog

from app.config import get_settings
from app.errors import (
    DocumentNotFoundError,
    EvaluationError,
    RAGPipelineError,
    UpstreamError,
    UpstreamTimeoutError,
)
from app.models.schemas import (
    Citation,
    EvaluationOptions,
    EvaluationResult,
    IndexResult,
    QuestionType,
    UsageRecord,
)
from app.services.chat_service import ChatService, get_chat_service
from app.services.credit_service import CreditService, compute_cost, get_credit_service
from app.services.evaluator import RAGEvaluator, get_rag_evaluator
from app.services.indexing_service import IndexingService, get_indexing_service
from app.services.rag_pipeline import RAGPipeline, get_rag_pipeline
from app.services.vector_store import VectorStore, get_vector_store

# Configure logging for terminal readability
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="%H:%M:%S"),
        structlog.dev.ConsoleRenderer()  # Human-readable format in terminal
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = structlog.get_logger()
settings = get_settings()

# Create FastAPI app
app = FastAPI(
    title="PDF Question Answering",
    description="Retrieval-augmented answers with page citations",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────────────────────
# Request/Response Models
# ─────────────────────────────────────────────────────────────

class ChatRequest(BaseModel):
    document_id: str
    message: str
    session_id: Optional[str] = None   # Enables history + message persistence
    user_id: Optional[str] = None      # Enables usage logging
    top_k: Optional[int] = None


class ChatResponse(BaseModel):
    answer: str
    sources: List[Citation]
    usage: Optional[UsageRecord] = None
    model: str


class EvaluateRequest(BaseModel):
    document_id: str
    question: str
    expected_answer: Optional[str] = None
    expected_pages: Optional[List[int]] = None
    top_k: Optional[int] = None
    question_type: Optional[QuestionType] = None
    use_judge: bool = False


class IndexRequest(BaseModel):
    file_name: Optional[str] = None    # Display name; defaults to the stored file name


class DeleteResponse(BaseModel):
    document_id: str
    deleted: bool
    message: str


# ─────────────────────────────────────────────────────────────
# Error translation
# ─────────────────────────────────────────────────────────────

def to_http_exception(error: Exception, action: str) -> HTTPException:
    """Map service errors to HTTP status codes."""
    cause = error.cause if isinstance(error, RAGPipelineError) else error

    if isinstance(cause, DocumentNotFoundError):
        return HTTPException(status_code=404, detail=str(cause))
    if isinstance(cause, UpstreamTimeoutError):
        return HTTPException(status_code=504, detail=f"{action} timed out: {cause}")
    if isinstance(cause, UpstreamError):
        return HTTPException(status_code=502, detail=f"{action} failed: {cause}")
    if isinstance(cause, ValueError):
        return HTTPException(status_code=400, detail=str(cause))
    return HTTPException(status_code=500, detail=f"{action} failed: {error}")


async def ensure_collection(vector_store: VectorStore, document_id: str):
    if not await vector_store.collection_exists(document_id):
        raise HTTPException(
            status_code=404,
            detail="No embeddings found for this document. Index the PDF first."
        )


# ─────────────────────────────────────────────────────────────
# API 1: Chat
# ─────────────────────────────────────────────────────────────

@app.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    background_tasks: BackgroundTasks,
    pipeline: RAGPipeline = Depends(get_rag_pipeline),
    vector_store: VectorStore = Depends(get_vector_store),
    chat_service: ChatService = Depends(get_chat_service),
    credit_service: CreditService = Depends(get_credit_service),
):
    """
    Answer a question about an indexed PDF with page citations.
    """
    if not request.message.strip():
        raise HTTPException(status_code=400, detail="Message must not be empty")
    if request.top_k is not None and request.top_k < 1:
        raise HTTPException(status_code=400, detail="top_k must be at least 1")

    await ensure_collection(vector_store, request.document_id)

    history = []
    if request.session_id:
        history = await chat_service.get_recent_turns(request.session_id)

    total_before = await credit_service.fetch_total_used()

    try:
        result = await pipeline.execute(
            request.document_id,
            request.message,
            top_k=request.top_k,
            history=history,
        )
    except RAGPipelineError as e:
        logger.error("Chat failed", document_id=request.document_id, stage=e.stage, error=str(e))
        if request.session_id:
            # Background tasks do not run when the request fails
            try:
                await chat_service.save_message(request.session_id, "user", request.message)
                await chat_service.save_message(
                    request.session_id, "assistant",
                    "An error occurred while generating the answer.", None, None, True
                )
            except Exception as save_error:
                logger.error("Failed to save error turn", session_id=request.session_id, error=str(save_error))
        raise to_http_exception(e, "Answer generation")

    if result.usage:
        total_after = await credit_service.fetch_total_used()
        result.usage.total_cost = compute_cost(total_before, total_after)

        if request.user_id:
            background_tasks.add_task(
                credit_service.log_usage,
                request.user_id,
                result.model,
                result.usage,
                "chat",
                request.session_id,
                request.document_id,
            )

    if request.session_id:
        background_tasks.add_task(chat_service.save_message, request.session_id, "user", request.message)
        background_tasks.add_task(
            chat_service.save_message, request.session_id, "assistant",
            result.answer, result.sources, result.usage
        )

    return ChatResponse(
        answer=result.answer,
        sources=result.sources,
        usage=result.usage,
        model=result.model,
    )


# ─────────────────────────────────────────────────────────────
# API 2: Evaluate
# ─────────────────────────────────────────────────────────────

@app.post("/evaluate", response_model=EvaluationResult)
async def evaluate(
    request: EvaluateRequest,
    evaluator: RAGEvaluator = Depends(get_rag_evaluator),
    vector_store: VectorStore = Depends(get_vector_store),
):
    """
    Evaluate retrieval (hit@K, best rank, reciprocal rank) and, optionally,
    the answer with a judge model.
    """
    if not request.question.strip():
        raise HTTPException(status_code=400, detail="Question must not be empty")
    if request.top_k is not None and request.top_k < 1:
        raise HTTPException(status_code=400, detail="top_k must be at least 1")

    await ensure_collection(vector_store, request.document_id)

    options = EvaluationOptions(
        top_k=request.top_k,
        question_type=request.question_type,
        expected_pages=request.expected_pages,
        use_judge=request.use_judge,
    )

    try:
        return await evaluator.evaluate(
            request.document_id,
            request.question,
            request.expected_answer,
            options,
        )
    except (RAGPipelineError, EvaluationError, UpstreamError) as e:
        logger.error("Evaluation failed", document_id=request.document_id, error=str(e))
        raise to_http_exception(e, "Evaluation")


# ─────────────────────────────────────────────────────────────
# API 3: Document collections
# ─────────────────────────────────────────────────────────────

@app.post("/documents/{document_id}/index", response_model=IndexResult)
async def index_document(
    document_id: str,
    request: Optional[IndexRequest] = None,
    indexing_service: IndexingService = Depends(get_indexing_service),
):
    """Embed every page of an uploaded PDF into the document's collection."""
    file_path = indexing_service.find_upload(document_id)
    if not file_path:
        raise HTTPException(status_code=404, detail="PDF file not found")

    file_name = (request.file_name if request else None) or file_path.rsplit("/", 1)[-1]

    try:
        return await indexing_service.index_document(document_id, file_path, file_name)
    except (ValueError, UpstreamError) as e:
        logger.error("Indexing failed", document_id=document_id, error=str(e))
        raise to_http_exception(e, "Indexing")


@app.delete("/documents/{document_id}", response_model=DeleteResponse)
async def delete_document(
    document_id: str,
    indexing_service: IndexingService = Depends(get_indexing_service),
):
    """Delete a document's collection."""
    try:
        deleted = await indexing_service.delete_document(document_id)
    except UpstreamError as e:
        raise to_http_exception(e, "Delete")

    if not deleted:
        raise HTTPException(status_code=404, detail="Document collection not found")

    return DeleteResponse(document_id=document_id, deleted=True, message="Document collection deleted")


@app.get("/documents/{document_id}/collection")
async def get_collection_info(
    document_id: str,
    indexing_service: IndexingService = Depends(get_indexing_service),
):
    """Chunk count of a document's collection."""
    info = await indexing_service.collection_info(document_id)
    if info["chunk_count"] == 0:
        raise HTTPException(status_code=404, detail="Document collection not found")
    return info


# ─────────────────────────────────────────────────────────────
# Helper Endpoints
# ─────────────────────────────────────────────────────────────

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
