"""
Evaluation Report
Aggregates per-question evaluation results into batch retrieval metrics.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional

from app.models.schemas import (
    QUESTION_TYPES,
    BatchReport,
    CaseError,
    EvaluationResult,
    JudgeScores,
    QuestionTypeStats,
    RetrievalSummary,
)

ROOT_CAUSES = ["OK", "RETRIEVAL_FAIL", "GENERATION_FAIL", "BOTH_FAIL"]


def reciprocal_rank(best_rank: Optional[int]) -> float:
    """1 / best_rank, or 0.0 when no retrieved result matched."""
    if best_rank is None:
        return 0.0
    if best_rank < 1:
        raise ValueError(f"best_rank is 1-indexed, got {best_rank}")
    return 1.0 / best_rank


def mean_reciprocal_rank(best_ranks: List[Optional[int]]) -> float:
    if not best_ranks:
        return 0.0
    return sum(reciprocal_rank(rank) for rank in best_ranks) / len(best_ranks)


def _average_scores(results: List[EvaluationResult]) -> Optional[JudgeScores]:
    judged = [r.judge for r in results if r.judge is not None]
    if not judged:
        return None
    n = len(judged)
    return JudgeScores(
        correctness=sum(j.answer.scores.correctness for j in judged) / n,
        groundedness=sum(j.answer.scores.groundedness for j in judged) / n,
        completeness=sum(j.answer.scores.completeness for j in judged) / n,
    )


def _question_type(result: EvaluationResult) -> Optional[str]:
    if result.question_type:
        return result.question_type
    if result.judge and result.judge.questionType:
        return result.judge.questionType
    return None


def _type_stats(results: List[EvaluationResult]) -> QuestionTypeStats:
    stats = QuestionTypeStats(count=len(results))
    if not results:
        return stats

    stats.hit_at_k = sum(r.retrieval.hit_at_k for r in results) / len(results)
    stats.mrr = mean_reciprocal_rank([r.retrieval.best_rank for r in results])
    for r in results:
        if r.judge is None:
            continue
        if r.judge.root_cause == "OK":
            stats.ok_count += 1
        elif r.judge.root_cause == "RETRIEVAL_FAIL":
            stats.retrieval_fail_count += 1
        elif r.judge.root_cause == "GENERATION_FAIL":
            stats.generation_fail_count += 1
        elif r.judge.root_cause == "BOTH_FAIL":
            stats.both_fail_count += 1
    stats.avg_scores = _average_scores(results)
    return stats


def build_report(
    results: List[EvaluationResult],
    errors: Optional[List[CaseError]] = None
) -> BatchReport:
    """
    Build the batch report.

    Failed cases count as a zero reciprocal rank in the overall MRR; hit@K
    and the average best rank are computed over successful cases only, the
    latter ignoring questions where nothing matched.
    """
    errors = errors or []
    best_ranks = [r.retrieval.best_rank for r in results]
    found_ranks = [rank for rank in best_ranks if rank is not None]

    reciprocal_ranks = [reciprocal_rank(rank) for rank in best_ranks] + [0.0] * len(errors)
    mrr = sum(reciprocal_ranks) / len(reciprocal_ranks) if reciprocal_ranks else 0.0

    retrieval = RetrievalSummary(
        hit_at_k=sum(r.retrieval.hit_at_k for r in results) / (len(results) or 1),
        avg_best_rank=sum(found_ranks) / len(found_ranks) if found_ranks else None,
        mrr=mrr,
    )

    root_causes: Dict[str, int] = {cause: 0 for cause in ROOT_CAUSES}
    for r in results:
        if r.judge is not None:
            root_causes[r.judge.root_cause] += 1

    by_type: Dict[str, List[EvaluationResult]] = {t: [] for t in QUESTION_TYPES}
    for r in results:
        question_type = _question_type(r)
        if question_type:
            by_type[question_type].append(r)

    return BatchReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        total_cases=len(results) + len(errors),
        successful_cases=len(results),
        failed_cases=len(errors),
        retrieval=retrieval,
        root_causes=root_causes,
        avg_scores=_average_scores(results),
        question_types={t: _type_stats(items) for t, items in by_type.items() if items},
        details=results,
        errors=errors,
    )
