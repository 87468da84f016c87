"""
Batch RAG evaluation.

Sends every test case to the /evaluate endpoint, then prints hit@K, MRR and
per-question-type statistics and writes the full report as JSON.

Usage:
    python scripts/evaluate_rag.py [test-cases.json] [--output results.json]

Test case file format:
    [{"document_id": "...", "question": "...", "expected_answer": "...",
      "expected_pages": [3], "question_type": "FACT"}]
"""
import argparse
import asyncio
import json
import os
import sys
import time
from pathlib import Path
from typing import List

import httpx
from pydantic import ValidationError

from app.models.schemas import BatchReport, CaseError, EvaluationCase, EvaluationResult
from app.services.evaluation_report import build_report

API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
DEFAULT_TEST_CASES_PATH = "scripts/test-cases.json"


def print_progress(current: int, total: int, question: str, status: str):
    percent = round(current / total * 100)
    short = question if len(question) <= 35 else question[:35] + "..."
    print(f"[{current}/{total}] ({percent}%) {short} [{status}]")


def print_summary(report: BatchReport):
    print("\n" + "=" * 60)
    print("  Evaluation summary")
    print("=" * 60 + "\n")
    print(f"Timestamp:     {report.timestamp}")
    print(f"Total cases:   {report.total_cases}")
    print(f"  - succeeded: {report.successful_cases}")
    print(f"  - failed:    {report.failed_cases}\n")

    avg_best_rank = report.retrieval.avg_best_rank
    print("Retrieval metrics:")
    print(f"  Hit@K:         {report.retrieval.hit_at_k * 100:.1f}%")
    print(f"  Avg Best Rank: {f'{avg_best_rank:.2f}' if avg_best_rank is not None else 'N/A'}")
    print(f"  MRR:           {report.retrieval.mrr:.4f}")

    if report.avg_scores:
        n = report.successful_cases or 1
        print("\nRoot causes:")
        for cause, count in report.root_causes.items():
            bar = "█" * round(count / n * 20)
            print(f"  {cause:<16} {count} ({count / n * 100:.1f}%) {bar}")
        print("\nAverage judge scores (0-5):")
        print(f"  Correctness:  {report.avg_scores.correctness:.2f}")
        print(f"  Groundedness: {report.avg_scores.groundedness:.2f}")
        print(f"  Completeness: {report.avg_scores.completeness:.2f}")

    if report.question_types:
        print("\n" + "-" * 60)
        print("  By question type")
        print("-" * 60)
        for question_type, stats in report.question_types.items():
            print(f"[{question_type}] ({stats.count}) hit@K {stats.hit_at_k * 100:.1f}% | MRR {stats.mrr:.4f}")

    for index, err in enumerate(report.errors[:5], start=1):
        print(f"  error {index}. Q: {err.case.question[:40]}... -> {err.error[:80]}")


async def run_batch(cases: List[EvaluationCase]) -> BatchReport:
    results: List[EvaluationResult] = []
    errors: List[CaseError] = []

    async with httpx.AsyncClient(base_url=API_BASE_URL, timeout=300.0) as client:
        for i, case in enumerate(cases, start=1):
            try:
                response = await client.post("/evaluate", json=case.model_dump(exclude_none=True))
                response.raise_for_status()
                result = EvaluationResult.model_validate(response.json())
                results.append(result)
                print_progress(i, len(cases), case.question, f"rank={result.retrieval.best_rank}")
            except (httpx.HTTPError, ValidationError) as e:
                errors.append(CaseError(case=case, error=str(e)))
                print_progress(i, len(cases), case.question, "ERROR")

    return build_report(results, errors)


def main():
    parser = argparse.ArgumentParser(description="Batch-evaluate the RAG pipeline")
    parser.add_argument("test_cases", nargs="?", default=DEFAULT_TEST_CASES_PATH)
    parser.add_argument("--output", default=None)
    args = parser.parse_args()

    path = Path(args.test_cases)
    if not path.exists():
        print(f"Test case file not found: {path.resolve()}", file=sys.stderr)
        sys.exit(1)

    cases = [EvaluationCase.model_validate(raw) for raw in json.loads(path.read_text(encoding="utf-8"))]
    print(f"Test cases: {len(cases)} from {path}")
    print(f"API server: {API_BASE_URL}\n")

    start = time.time()
    report = asyncio.run(run_batch(cases))
    print_summary(report)
    print(f"\nElapsed: {time.time() - start:.1f}s")

    output = Path(args.output or f"evaluation-results-{int(time.time())}.json")
    output.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    print(f"Results saved to {output.resolve()}")


if __name__ == "__main__":
    main()
