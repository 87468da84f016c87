"""
RAG Pipeline
Retrieve -> format -> prompt -> generate -> drain -> cite -> usage.
"""
from typing import List, Optional
import structlog

from app.config import Settings, get_settings
from app.errors import RAGPipelineError
from app.models.schemas import (
    ChatTurn,
    Citation,
    LLMConfig,
    PipelineResult,
    RetrievalResult,
    TokenUsage,
    UsageRecord,
)
from app.services.generator import AnswerGenerator, GenerationResult, get_answer_generator
from app.services.prompt_builder import (
    NOT_FOUND_ANSWER,
    build_system_prompt,
    build_user_prompt,
)
from app.services.retriever import Retriever, format_contexts, get_retriever

logger = structlog.get_logger()


def usable_history(history: Optional[List[ChatTurn]]) -> List[ChatTurn]:
    """Drop turns flagged as errors, keeping chronological order."""
    return [turn for turn in history or [] if not turn.is_error]


def build_citations(results: List[RetrievalResult]) -> List[Citation]:
    """One citation per result, same order, repeated pages kept."""
    return [
        Citation(
            page_number=result.page_number,
            file_name=result.file_name,
            snippet=result.snippet,
            score=result.score,
        )
        for result in results
    ]


def to_usage_record(usage: Optional[TokenUsage]) -> Optional[UsageRecord]:
    """
    Convert reported token counts. Returns None when both counts are missing;
    a single missing count stays None. Cost is left at zero; callers derive
    it from gateway spend.
    """
    if usage is None or (usage.input_tokens is None and usage.output_tokens is None):
        return None
    return UsageRecord(
        prompt_tokens=usage.input_tokens,
        completion_tokens=usage.output_tokens,
    )


async def drain(generation: GenerationResult) -> str:
    parts = []
    async for part in generation.text_stream:
        parts.append(part)
    return "".join(parts)


class RAGPipeline:
    """Answers a question about one document with page citations."""

    def __init__(
        self,
        retriever: Optional[Retriever] = None,
        generator: Optional[AnswerGenerator] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or get_settings()
        self.retriever = retriever or get_retriever()
        self.generator = generator or get_answer_generator()

    async def execute(
        self,
        document_id: str,
        question: str,
        top_k: Optional[int] = None,
        history: Optional[List[ChatTurn]] = None,
        config: Optional[LLMConfig] = None
    ) -> PipelineResult:
        """
        Run the full pipeline and buffer the answer.

        Zero retrieval results short-circuit to a fixed "not found" answer
        with no sources and no usage. Any other failure is raised as
        RAGPipelineError; no partial answer is returned.

        Args:
            document_id: Document to answer from
            question: User's question
            top_k: Number of pages to retrieve (defaults to settings)
            history: Recent conversation turns, oldest first
            config: Generation overrides

        Returns:
            PipelineResult with answer, sources, usage and model
        """
        if top_k is None:
            top_k = self.settings.top_k
        config = config or LLMConfig()
        stage = "retrieve"

        try:
            results = await self.retriever.retrieve(document_id, question, top_k)

            if not results:
                logger.info("No relevant pages found", document_id=document_id)
                return PipelineResult(
                    answer=NOT_FOUND_ANSWER,
                    sources=[],
                    usage=None,
                    model=config.model or self.settings.llm_model,
                )

            stage = "format"
            contexts = format_contexts(results)

            stage = "prompt"
            system_prompt = build_system_prompt()
            user_prompt = build_user_prompt(question, contexts)

            stage = "generate"
            generation = await self.generator.generate(
                user_prompt,
                system_prompt,
                config,
                history=usable_history(history),
            )

            stage = "drain"
            answer = await drain(generation)

            stage = "cite"
            sources = build_citations(results)

            stage = "usage"
            token_usage = await generation.usage()

        except Exception as e:
            logger.error("RAG pipeline failed", stage=stage, document_id=document_id, error=str(e))
            raise RAGPipelineError(stage, e) from e

        usage = to_usage_record(token_usage)
        logger.info(
            "RAG pipeline complete",
            document_id=document_id,
            sources=len(sources),
            answer_chars=len(answer),
            prompt_tokens=usage.prompt_tokens if usage else None,
        )

        return PipelineResult(
            answer=answer,
            sources=sources,
            usage=usage,
            model=generation.model,
        )


# Singleton instance
_rag_pipeline: Optional[RAGPipeline] = None


def get_rag_pipeline() -> RAGPipeline:
    """Get singleton pipeline instance."""
    global _rag_pipeline
    if _rag_pipeline is None:
        _rag_pipeline = RAGPipeline()
    return _rag_pipeline


async def execute_rag_pipeline(
    document_id: str,
    question: str,
    top_k: Optional[int] = None,
    history: Optional[List[ChatTurn]] = None
) -> PipelineResult:
    """Entry point used by the chat endpoint."""
    return await get_rag_pipeline().execute(document_id, question, top_k, history)
