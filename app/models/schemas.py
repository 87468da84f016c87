"""
Data models for the RAG pipeline.
"""
from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any, Literal

Role = Literal["user", "assistant"]
QuestionType = Literal["FACT", "COMPOSITE", "INFERENCE", "NOT_IN_DOC", "AMBIGUOUS"]
QUESTION_TYPES: List[str] = ["FACT", "COMPOSITE", "INFERENCE", "NOT_IN_DOC", "AMBIGUOUS"]


# ─────────────────────────────────────────────────────────────
# Indexing
# ─────────────────────────────────────────────────────────────

class PageText(BaseModel):
    """Extracted text of a single PDF page."""
    page_number: int
    text: str


class PageChunk(BaseModel):
    """One embedded unit (a page) with its vector store metadata."""
    id: str
    content: str
    page_number: int
    metadata: Dict[str, Any] = {}


class IndexResult(BaseModel):
    document_id: str
    collection_name: str
    total_pages: int
    indexed_pages: int


class QueryResult(BaseModel):
    """Raw nearest-neighbour result, one inner list per query embedding."""
    ids: List[List[Optional[str]]] = []
    documents: List[List[Optional[str]]] = []
    metadatas: List[List[Optional[Dict[str, Any]]]] = []
    distances: List[List[Optional[float]]] = []


# ─────────────────────────────────────────────────────────────
# Retrieval & answering
# ─────────────────────────────────────────────────────────────

class RetrievalResult(BaseModel):
    page_number: int
    file_name: str
    content: str
    snippet: str
    score: float  # 1 - cosine distance
    metadata: Dict[str, Any] = {}


class PromptContext(BaseModel):
    page_number: int
    content: str


class Citation(BaseModel):
    page_number: int
    file_name: str
    snippet: str
    score: Optional[float] = None


class ChatTurn(BaseModel):
    role: Role
    content: str
    is_error: bool = False


class LLMConfig(BaseModel):
    """Per-call generation overrides; None falls back to settings."""
    temperature: Optional[float] = None
    model: Optional[str] = None
    max_tokens: Optional[int] = None


class TokenUsage(BaseModel):
    """Token counts as reported by the generation API."""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class UsageRecord(BaseModel):
    """Token counts stay None when the generation API did not report them."""
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_cost: float = Field(default=0.0, ge=0.0)


class PipelineResult(BaseModel):
    answer: str
    sources: List[Citation] = []
    usage: Optional[UsageRecord] = None
    model: str


# ─────────────────────────────────────────────────────────────
# Evaluation
# ─────────────────────────────────────────────────────────────

class EvaluationOptions(BaseModel):
    top_k: Optional[int] = None
    question_type: Optional[QuestionType] = None
    expected_pages: Optional[List[int]] = None
    use_judge: bool = False


class EvaluationChunk(BaseModel):
    chunk_id: str
    rank: int
    score: float
    page_number: int
    file_name: str
    content: str
    snippet: str


class EvaluationSource(Citation):
    chunk_id: str
    rank: int


class SupportingChunk(BaseModel):
    chunk_id: str
    rank: int


class RetrievalMetrics(BaseModel):
    supporting_chunks: List[SupportingChunk] = []
    hit_at_k: int = 0
    best_rank: Optional[int] = None
    reciprocal_rank: float = 0.0
    match_strategy: Literal["page", "content", "none"] = "none"


class JudgeClaim(BaseModel):
    claim: str
    label: Literal["supported", "unsupported", "contradicted"]
    evidence_chunk_id: Optional[str] = None


class JudgeScores(BaseModel):
    correctness: float = 0
    groundedness: float = 0
    completeness: float = 0


class JudgeRetrieval(BaseModel):
    supporting_chunks: List[SupportingChunk] = []
    hit_at_k: int = 0
    best_rank: Optional[int] = None


class JudgeAnswer(BaseModel):
    claims: List[JudgeClaim] = []
    scores: JudgeScores = Field(default_factory=JudgeScores)


class JudgeVerdict(BaseModel):
    """Structured verdict returned by the judge model."""
    questionType: Optional[QuestionType] = None
    retrieval: JudgeRetrieval
    answer: JudgeAnswer
    root_cause: Literal["OK", "RETRIEVAL_FAIL", "GENERATION_FAIL", "BOTH_FAIL"]
    fix_suggestions: List[str] = []


class EvaluationResult(BaseModel):
    question: str
    answer: str
    expected_answer: Optional[str] = None
    question_type: Optional[QuestionType] = None
    model: str
    retrieved_chunks: List[EvaluationChunk] = []
    sources: List[EvaluationSource] = []
    retrieval: RetrievalMetrics = Field(default_factory=RetrievalMetrics)
    judge: Optional[JudgeVerdict] = None


# ─────────────────────────────────────────────────────────────
# Batch evaluation report
# ─────────────────────────────────────────────────────────────

class EvaluationCase(BaseModel):
    """One line of a batch evaluation test-case file."""
    document_id: str
    question: str
    expected_answer: Optional[str] = None
    expected_pages: Optional[List[int]] = None
    top_k: Optional[int] = None
    question_type: Optional[QuestionType] = None


class CaseError(BaseModel):
    case: EvaluationCase
    error: str


class RetrievalSummary(BaseModel):
    hit_at_k: float = 0.0
    avg_best_rank: Optional[float] = None
    mrr: float = 0.0


class QuestionTypeStats(BaseModel):
    count: int = 0
    hit_at_k: float = 0.0
    mrr: float = 0.0
    ok_count: int = 0
    retrieval_fail_count: int = 0
    generation_fail_count: int = 0
    both_fail_count: int = 0
    avg_scores: Optional[JudgeScores] = None


class BatchReport(BaseModel):
    timestamp: str
    total_cases: int
    successful_cases: int
    failed_cases: int
    retrieval: RetrievalSummary
    root_causes: Dict[str, int] = {}
    avg_scores: Optional[JudgeScores] = None
    question_types: Dict[str, QuestionTypeStats] = {}
    details: List[EvaluationResult] = []
    errors: List[CaseError] = []
