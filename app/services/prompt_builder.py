"""
Prompt Builder
System and user prompts for grounded answers over PDF pages.
"""
from typing import List

from app.models.schemas import PromptContext

NOT_FOUND_ANSWER = (
    "Sorry, I couldn't find anything related to your question in the document."
)

CONTEXT_SEPARATOR = "\n\n---\n\n"

RAG_SYSTEM_PROMPT = """You are a question-answering assistant for PDF documents.

Rules:
1. Answer only from the provided context (the PDF document content). Never use outside knowledge.
2. Do not guess about anything that is not in the context.
3. If the answer cannot be derived from the context, say explicitly: "I couldn't find that information in the provided document."
4. Answer clearly and concisely.
5. When several passages are relevant, combine them into one answer instead of quoting a single passage.
6. Cite the page of every passage you used in the form (Page X)."""


def build_system_prompt() -> str:
    """Fixed answering policy for the generation model."""
    return RAG_SYSTEM_PROMPT


def build_user_prompt(question: str, contexts: List[PromptContext]) -> str:
    """
    Interleave retrieved pages and the question.
    Each context is labelled with its page number, in the given order.
    """
    context_text = CONTEXT_SEPARATOR.join(
        f"[Page {ctx.page_number}]\n{ctx.content}" for ctx in contexts
    )

    return (
        "The following passages were retrieved from the PDF document:\n\n"
        f"{context_text}\n\n"
        f"Question: {question}\n\n"
        "Answer:"
    )
