from __future__ import annotations

import logging
from typing import Sequence

from memory.llm_client import ModelClient, RetryPolicy, request_text, with_retries
from memory.models import Chapter, QueryResult

logger = logging.getLogger(__name__)

NOT_FOUND_ANSWER = "Not found."

_SYSTEM_PROMPT = (
    "You answer questions about an interactive story using only the chapter text you are given. "
    "Answer concisely in one to three sentences. If the text does not contain the answer, "
    f"reply with exactly: {NOT_FOUND_ANSWER} Never guess or invent details."
)


def is_not_found_answer(answer: str) -> bool:
    norm = answer.strip().lower().rstrip(".!")
    return norm == "not found" or norm.startswith("not found.") or norm.startswith("not found:")


def _estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4)


def _chapter_block(chapter: Chapter, text: str | None = None) -> str:
    heading = f"=== Chapter {chapter.number}" + (f": {chapter.title}" if chapter.title else "") + " ==="
    return f"{heading}\n{chapter.source_text if text is None else text}"


def fit_range_to_budget(
    chapters: Sequence[Chapter],
    token_budget: int,
) -> tuple[list[str], list[int], int | None]:
    """Return the chapter blocks that fit the budget, the numbers left out, and
    the number of a chapter kept only in part (or None).

    Oldest chapters are dropped first. The newest chapter is always kept,
    cut down to its most recent text when it alone exceeds the budget.
    """
    blocks: list[str] = []
    used = 0
    kept = 0
    cut: int | None = None
    for chapter in reversed(chapters):
        block = _chapter_block(chapter)
        estimate = _estimate_tokens(block)
        if used + estimate > token_budget:
            break
        blocks.append(block)
        used += estimate
        kept += 1

    if kept == 0 and chapters:
        newest = chapters[-1]
        max_chars = max(1, token_budget * 4 - len(_chapter_block(newest, "")) - 3)
        blocks.append(_chapter_block(newest, "..." + newest.source_text[-max_chars:]))
        kept = 1
        cut = newest.number

    blocks.reverse()
    dropped = [chapter.number for chapter in chapters[: len(chapters) - kept]]
    return blocks, dropped, cut


class QueryExecutor:
    """Answers one question against one chapter or a run of chapters. Stateless."""

    def __init__(self, llm: ModelClient, retry_policy: RetryPolicy | None = None) -> None:
        self.llm = llm
        self.retry_policy = retry_policy or RetryPolicy()

    async def query_chapter(self, chapter: Chapter, question: str) -> QueryResult:
        user_prompt = f"QUESTION:\n{question}\n\nCHAPTER TEXT:\n{_chapter_block(chapter)}"
        answer = await with_retries(
            lambda: request_text(self.llm, _SYSTEM_PROMPT, user_prompt, max_tokens=400),
            policy=self.retry_policy,
            label=f"query chapter {chapter.number}",
        )
        return QueryResult(question=question, answer=answer, chapter_number=chapter.number)

    async def query_range(
        self,
        chapters: Sequence[Chapter],
        question: str,
        *,
        token_budget: int,
    ) -> QueryResult:
        if not chapters:
            raise ValueError("query_range needs at least one chapter")

        blocks, dropped, cut = fit_range_to_budget(chapters, token_budget)
        if dropped or cut is not None:
            logger.info(
                "Range query over chapters %d-%d dropped %s (cut: %s) to fit %d tokens",
                chapters[0].number,
                chapters[-1].number,
                dropped,
                cut,
                token_budget,
            )
        joined = "\n\n".join(blocks)
        user_prompt = f"QUESTION:\n{question}\n\nCHAPTER TEXT:\n{joined}"
        label = f"query chapters {chapters[0].number}-{chapters[-1].number}"
        answer = await with_retries(
            lambda: request_text(self.llm, _SYSTEM_PROMPT, user_prompt, max_tokens=600),
            policy=self.retry_policy,
            label=label,
        )
        notes = []
        if dropped:
            listed = ", ".join(str(number) for number in dropped)
            notes.append(f"chapters {listed} were left out")
        if cut is not None:
            notes.append(f"chapter {cut} was cut to its most recent text")
        if notes:
            answer = f"{answer}\n\n(Note: " + "; ".join(notes) + " to fit the context budget.)"
        return QueryResult(
            question=question,
            answer=answer,
            chapter_range=(chapters[0].number, chapters[-1].number),
            truncated_chapters=dropped + ([cut] if cut is not None else []),
        )
