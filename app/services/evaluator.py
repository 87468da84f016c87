"""
RAG Evaluator
Runs the retrieve -> generate flow for one question and scores retrieval
against ground truth (expected pages or an expected answer). An optional
judge model grades the generated answer.
"""
import json
import re
from typing import List, Optional, Set, Tuple
import structlog
from pydantic import ValidationError

from app.config import Settings, get_settings
from app.errors import EvaluationError, RAGPipelineError
from app.models.schemas import (
    EvaluationChunk,
    EvaluationOptions,
    EvaluationResult,
    EvaluationSource,
    JudgeVerdict,
    LLMConfig,
    RetrievalMetrics,
    RetrievalResult,
    SupportingChunk,
)
from app.services.evaluation_report import reciprocal_rank
from app.services.generator import AnswerGenerator, get_answer_generator
from app.services.prompt_builder import (
    NOT_FOUND_ANSWER,
    build_system_prompt,
    build_user_prompt,
)
from app.services.rag_pipeline import drain
from app.services.retriever import Retriever, format_contexts, get_retriever

logger = structlog.get_logger()

JUDGE_SYSTEM_PROMPT = """You are an expert evaluator of RAG systems.
Respond with valid JSON only.
Do not use markdown code blocks (```).
Do not include any text outside the JSON object."""

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def get_chunk_id(document_id: str, page_number: int) -> str:
    return f"{document_id}_page_{page_number}"


def clip_text(text: str, max_length: int = 1800) -> str:
    """
    Shorten text keeping 70% from the head and 30% from the tail, so that
    evidence near the end of a page is not cut off.
    """
    if len(text) <= max_length:
        return text

    head = text[:int(max_length * 0.7)]
    tail = text[-int(max_length * 0.3):]
    return f"{head}\n\n[...]\n\n{tail}"


def _tokens(text: str) -> Set[str]:
    return {t for t in _WORD_RE.findall(text.lower()) if len(t) > 1}


def content_overlap(expected_answer: str, content: str) -> float:
    """Fraction of the expected answer's words that occur in ``content``."""
    expected = _tokens(expected_answer)
    if not expected:
        return 0.0
    return len(expected & _tokens(content)) / len(expected)


def match_chunks(
    chunks: List[EvaluationChunk],
    expected_pages: Optional[List[int]] = None,
    expected_answer: Optional[str] = None,
    overlap_threshold: float = 0.5
) -> Tuple[List[SupportingChunk], str]:
    """
    Find chunks that support the expected result.

    Page numbers are used when expected pages are given; otherwise content
    overlap with the expected answer. Without ground truth nothing matches.

    Returns:
        (supporting chunks in rank order, strategy name)
    """
    if expected_pages:
        pages = set(expected_pages)
        supporting = [
            SupportingChunk(chunk_id=c.chunk_id, rank=c.rank)
            for c in chunks if c.page_number in pages
        ]
        return supporting, "page"

    if expected_answer and _tokens(expected_answer):
        supporting = [
            SupportingChunk(chunk_id=c.chunk_id, rank=c.rank)
            for c in chunks
            if content_overlap(expected_answer, c.content) >= overlap_threshold
        ]
        return supporting, "content"

    return [], "none"


def compute_retrieval_metrics(
    chunks: List[EvaluationChunk],
    expected_pages: Optional[List[int]] = None,
    expected_answer: Optional[str] = None,
    overlap_threshold: float = 0.5
) -> RetrievalMetrics:
    supporting, strategy = match_chunks(chunks, expected_pages, expected_answer, overlap_threshold)
    best_rank = supporting[0].rank if supporting else None

    return RetrievalMetrics(
        supporting_chunks=supporting,
        hit_at_k=1 if best_rank is not None else 0,
        best_rank=best_rank,
        reciprocal_rank=reciprocal_rank(best_rank),
        match_strategy=strategy,
    )


def build_evaluation_prompt(
    question: str,
    chunks: List[EvaluationChunk],
    answer: str,
    expected_answer: Optional[str] = None,
    question_type: Optional[str] = None
) -> str:
    """Prompt asking the judge to grade retrieval, the answer and the root cause."""
    chunks_text = "\n\n".join(
        f"- (rank={c.rank}, chunk_id={c.chunk_id}, score={c.score:.4f})\n{clip_text(c.content, 1800)}"
        for c in chunks
    )
    question_type_hint = f"\n[Question Type Hint]: {question_type}" if question_type else ""

    return f"""You are evaluating the overall quality of a RAG system.
1) Judge whether retrieval brought back the evidence needed to answer,
2) judge whether the answer used that evidence correctly,
3) if something went wrong, classify the cause as a retrieval problem or a generation problem.

[Question]
{question}{question_type_hint}

[Retrieved Chunks] (Top-{len(chunks)})
{chunks_text}

[Model Answer]
{answer}

[Expected Answer] (if any)
{expected_answer or "none"}

## Procedure

### Step A: classify the question
- FACT: a simple factual question
- COMPOSITE: requires combining several pieces of information
- INFERENCE: requires reasoning beyond the literal text
- NOT_IN_DOC: asks for information the document does not contain
- AMBIGUOUS: the question is unclear

### Step B: retrieval
Find the chunks that contain the evidence needed for the answer and record best_rank.

### Step C: generation
Split the answer into its key claims and label each one:
- supported: backed by a chunk and used correctly
- unsupported: no chunk backs the claim
- contradicted: conflicts with a chunk

### Step D: root_cause (follow these rules exactly)
| Condition | root_cause |
|-----------|------------|
| supporting_chunks present and all key claims supported | OK |
| supporting_chunks empty (except NOT_IN_DOC questions) | RETRIEVAL_FAIL |
| supporting_chunks present but key claims unsupported/contradicted | GENERATION_FAIL |
| supporting_chunks empty and the answer asserts something wrong | BOTH_FAIL |
| NOT_IN_DOC question and the model correctly says it does not know | OK |
| NOT_IN_DOC question and the model invents information | GENERATION_FAIL |

## Output format
Return only this JSON object:
{{
  "questionType": "FACT|COMPOSITE|INFERENCE|NOT_IN_DOC|AMBIGUOUS",
  "retrieval": {{
    "supporting_chunks": [{{"chunk_id": "...", "rank": 2}}],
    "hit_at_k": 0,
    "best_rank": null
  }},
  "answer": {{
    "claims": [
      {{"claim": "...", "label": "supported|unsupported|contradicted", "evidence_chunk_id": null}}
    ],
    "scores": {{"correctness": 0, "groundedness": 0, "completeness": 0}}
  }},
  "root_cause": "OK|RETRIEVAL_FAIL|GENERATION_FAIL|BOTH_FAIL",
  "fix_suggestions": ["concrete improvement"]
}}
Scores range from 0 to 5."""


def parse_judge_response(response: str) -> JudgeVerdict:
    """Strip code fences, extract the JSON object and validate it."""
    text = response.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]

    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        raise EvaluationError(f"No JSON object in judge response: {response[:200]}")

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise EvaluationError(f"Judge response is not valid JSON: {e}; response: {response[:300]}") from e

    missing = [key for key in ("retrieval", "answer", "root_cause") if key not in parsed]
    if missing:
        raise EvaluationError(f"Judge response is missing fields: {missing}")

    try:
        return JudgeVerdict.model_validate(parsed)
    except ValidationError as e:
        raise EvaluationError(f"Judge response failed validation: {e}") from e


class RAGEvaluator:
    """Evaluates retrieval quality (best rank, reciprocal rank) per question."""

    def __init__(
        self,
        retriever: Optional[Retriever] = None,
        generator: Optional[AnswerGenerator] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or get_settings()
        self.retriever = retriever or get_retriever()
        self.generator = generator or get_answer_generator()

    async def _answer(
        self,
        question: str,
        results: List[RetrievalResult]
    ) -> Tuple[str, str]:
        contexts = format_contexts(results)
        generation = await self.generator.generate(
            build_user_prompt(question, contexts),
            build_system_prompt(),
        )
        answer = await drain(generation)
        return answer, generation.model

    async def run_judge(self, evaluation_prompt: str) -> JudgeVerdict:
        """Grade with temperature 0 for reproducible verdicts."""
        config = LLMConfig(temperature=0, model=self.settings.judge_model)
        generation = await self.generator.generate(evaluation_prompt, JUDGE_SYSTEM_PROMPT, config)
        return parse_judge_response(await drain(generation))

    async def evaluate(
        self,
        document_id: str,
        question: str,
        expected_answer: Optional[str] = None,
        options: Optional[EvaluationOptions] = None
    ) -> EvaluationResult:
        """
        Evaluate one question against a document.

        Missing ground truth never fails: best_rank is None and the
        reciprocal rank contribution is 0.

        Args:
            document_id: Document to answer from
            question: Question to evaluate
            expected_answer: Reference answer used for content matching
            options: top_k, question_type, expected_pages, use_judge

        Returns:
            EvaluationResult
        """
        options = options or EvaluationOptions()
        top_k = options.top_k if options.top_k is not None else self.settings.top_k
        stage = "retrieve"

        try:
            results = await self.retriever.retrieve(document_id, question, top_k)

            if results:
                stage = "generate"
                answer, model = await self._answer(question, results)
            else:
                answer, model = NOT_FOUND_ANSWER, self.settings.llm_model
        except Exception as e:
            logger.error("Evaluation run failed", stage=stage, document_id=document_id, error=str(e))
            raise RAGPipelineError(stage, e) from e

        chunks = [
            EvaluationChunk(
                chunk_id=get_chunk_id(document_id, result.page_number),
                rank=rank,
                score=result.score,
                page_number=result.page_number,
                file_name=result.file_name,
                content=result.content,
                snippet=result.snippet,
            )
            for rank, result in enumerate(results, start=1)
        ]
        sources = [
            EvaluationSource(
                page_number=c.page_number,
                file_name=c.file_name,
                snippet=c.snippet,
                score=c.score,
                chunk_id=c.chunk_id,
                rank=c.rank,
            )
            for c in chunks
        ]

        metrics = compute_retrieval_metrics(
            chunks,
            expected_pages=options.expected_pages,
            expected_answer=expected_answer,
            overlap_threshold=self.settings.eval_overlap_threshold,
        )

        judge = None
        if options.use_judge:
            prompt = build_evaluation_prompt(
                question, chunks, answer, expected_answer, options.question_type
            )
            judge = await self.run_judge(prompt)

        logger.info(
            "Evaluation complete",
            document_id=document_id,
            retrieved=len(chunks),
            best_rank=metrics.best_rank,
            strategy=metrics.match_strategy,
            root_cause=judge.root_cause if judge else None,
        )

        return EvaluationResult(
            question=question,
            answer=answer,
            expected_answer=expected_answer,
            question_type=options.question_type or (judge.questionType if judge else None),
            model=model,
            retrieved_chunks=chunks,
            sources=sources,
            retrieval=metrics,
            judge=judge,
        )


# Singleton instance
_rag_evaluator: Optional[RAGEvaluator] = None


def get_rag_evaluator() -> RAGEvaluator:
    """Get singleton evaluator instance."""
    global _rag_evaluator
    if _rag_evaluator is None:
        _rag_evaluator = RAGEvaluator()
    return _rag_evaluator


async def evaluate_rag(
    document_id: str,
    question: str,
    expected_answer: Optional[str] = None,
    options: Optional[EvaluationOptions] = None
) -> EvaluationResult:
    """Entry point used by the evaluation endpoint and batch script."""
    return await get_rag_evaluator().evaluate(document_id, question, expected_answer, options)
