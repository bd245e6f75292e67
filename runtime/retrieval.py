from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, Sequence

from config.settings import RetrievalConfig
from memory.chapter_index import ChapterIndex
from memory.errors import MalformedOutput, OperationFailed
from memory.llm_client import ModelClient, RetryPolicy, request_json, with_retries
from memory.models import (
    Chapter,
    ChapterPreview,
    ChapterQuery,
    QueryResult,
    RetrievalDecision,
    RetrievedContext,
)
from memory.query import QueryExecutor, is_not_found_answer

logger = logging.getLogger(__name__)


class RetrievalPlanner(Protocol):
    strategy: str

    async def retrieve(
        self,
        user_input: str,
        index: ChapterIndex,
        config: RetrievalConfig,
    ) -> RetrievedContext | None: ...


def choose_strategy(config: RetrievalConfig, chapter_count: int) -> str:
    if config.planner_mode != "auto":
        return config.planner_mode
    return "agentic" if chapter_count >= config.agentic_threshold else "static"


def render_previews(previews: Sequence[ChapterPreview]) -> str:
    blocks = []
    for preview in previews:
        title = f" - {preview.title}" if preview.title else ""
        characters = ", ".join(preview.characters) or "(none)"
        locations = ", ".join(preview.locations) or "(none)"
        blocks.append(
            f"Chapter {preview.number}{title}\n"
            f"Characters: {characters}\n"
            f"Locations: {locations}\n"
            f"Summary: {preview.summary.strip()}"
        )
    return "\n\n".join(blocks)


class StaticRetrievalPlanner:
    """One decision call, then every chosen chapter query in parallel."""

    strategy = "static"

    def __init__(
        self,
        llm: ModelClient,
        executor: QueryExecutor,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.llm = llm
        self.executor = executor
        self.retry_policy = retry_policy or RetryPolicy()

    async def decide(
        self,
        user_input: str,
        previews: Sequence[ChapterPreview],
        config: RetrievalConfig,
    ) -> RetrievalDecision:
        system_prompt = (
            "You manage long-term memory for an interactive story. Given the player's next "
            "input and the list of past chapters, decide which chapters (if any) hold details "
            "the narrator needs right now. Most turns need no chapters at all; never force a "
            "selection. Return strict JSON only."
        )
        user_prompt = (
            f"PLAYER INPUT:\n{user_input}\n\n"
            f"PAST CHAPTERS:\n{render_previews(previews)}\n\n"
            f"Select at most {config.max_queries_per_turn} chapters and one specific question "
            "to ask each.\n"
            "JSON schema:\n"
            "{\n"
            '  "queries": [{"chapter": 1, "question": "..."}]\n'
            "}\n"
            'Use {"queries": []} when no past chapter is relevant.'
        )

        async def attempt() -> RetrievalDecision:
            parsed = await request_json(
                self.llm,
                system_prompt,
                user_prompt,
                required_keys=("queries",),
                max_tokens=500,
            )
            return _parse_decision(parsed.payload.get("queries"), len(previews), config)

        return await with_retries(attempt, policy=self.retry_policy, label="retrieval decision")

    async def retrieve(
        self,
        user_input: str,
        index: ChapterIndex,
        config: RetrievalConfig,
    ) -> RetrievedContext | None:
        chapters = index.all()
        try:
            decision = await self.decide(user_input, [chapter.preview() for chapter in chapters], config)
        except OperationFailed as exc:
            logger.warning("Retrieval decision failed, continuing without context: %s", exc)
            return None

        if not decision.queries:
            return RetrievedContext(results=[], strategy=self.strategy)

        by_number = {chapter.number: chapter for chapter in chapters}
        answers = await asyncio.gather(
            *(self._run_query(by_number[query.chapter_number], query) for query in decision.queries)
        )
        results = [
            result
            for result in answers
            if result is not None and not is_not_found_answer(result.answer)
        ]
        logger.info(
            "Static retrieval: %d queried, %d answered",
            len(decision.queries),
            len(results),
        )
        return RetrievedContext(results=results, strategy=self.strategy)

    async def _run_query(self, chapter: Chapter, query: ChapterQuery) -> QueryResult | None:
        try:
            return await self.executor.query_chapter(chapter, query.question)
        except OperationFailed as exc:
            logger.warning("Query against chapter %d failed: %s", query.chapter_number, exc)
            return None


def _parse_decision(raw: Any, chapter_count: int, config: RetrievalConfig) -> RetrievalDecision:
    if not isinstance(raw, list):
        raise MalformedOutput("'queries' must be a list")

    queries: list[ChapterQuery] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            number = int(item.get("chapter"))
        except (TypeError, ValueError):
            continue
        question = str(item.get("question", "")).strip()
        if not question:
            continue
        if not 1 <= number <= chapter_count:
            logger.info("Dropping decision for unknown chapter %d", number)
            continue
        queries.append(ChapterQuery(chapter_number=number, question=question))

    if len(queries) > config.max_queries_per_turn:
        logger.info(
            "Decision returned %d queries; keeping the first %d",
            len(queries),
            config.max_queries_per_turn,
        )
    return RetrievalDecision(queries=queries[: config.max_queries_per_turn])
