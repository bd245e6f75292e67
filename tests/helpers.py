from __future__ import annotations

from datetime import datetime, timezone
import inspect
import json
from typing import Any, Callable

from config.settings import RetrievalConfig
from memory.chapter_index import ChapterIndex
from memory.llm_client import RetryPolicy
from memory.models import Chapter, ChapterMetadata, Turn
from memory.query import QueryExecutor
from memory.segmenter import ChapterSegmenter
from memory.storage.sqlite_store import SQLiteStore
from memory.summarizer import ChapterSummarizer
from runtime.agentic import AgenticRetrievalPlanner
from runtime.orchestrator import MemoryOrchestrator
from runtime.retrieval import StaticRetrievalPlanner

# Substrings of each system prompt, used to route fake model calls.
ENDPOINT = "divide an interactive story into chapters"
SUMMARY = "archivist"
METADATA = "structured retrieval metadata"
QUERY = "answer questions about an interactive story"
DECISION = "manage long-term memory"
AGENT = "memory researcher"

NO_RETRY_DELAY = RetryPolicy(attempts=5, base_delay=0.0)


class ScriptedLLM:
    """Fake ModelClient. The handler gets (system_prompt, user_prompt) and returns
    a string, raises, or returns an awaitable resolving to a string."""

    def __init__(self, handler: Callable[[str, str], Any]) -> None:
        self.handler = handler
        self.calls: list[tuple[str, str]] = []

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        additional_messages=None,
        temperature=None,
        max_tokens: int = 900,
    ) -> str:
        self.calls.append((system_prompt, user_prompt))
        result = self.handler(system_prompt, user_prompt)
        if inspect.isawaitable(result):
            result = await result
        return result

    def calls_for(self, marker: str) -> list[str]:
        return [user for system, user in self.calls if marker in system]


def metadata_json(**overrides: Any) -> str:
    payload = {
        "keywords": ["lighthouse", "storm"],
        "characters": ["Mara", "Tobin"],
        "locations": ["Gull Point"],
        "plot_threads": ["the missing keeper"],
        "emotional_tone": "tense and hopeful",
    }
    payload.update(overrides)
    return json.dumps(payload)


def make_chapter(
    number: int,
    start: int,
    end: int,
    *,
    text: str | None = None,
    title: str | None = None,
    summary: str | None = None,
) -> Chapter:
    return Chapter(
        chapter_id=f"chapter-{number}",
        number=number,
        title=title,
        start_turn_id=f"turn-{start}",
        end_turn_id=f"turn-{end}",
        start_position=start,
        end_position=end,
        turn_count=end - start + 1,
        summary=summary or f"Summary of chapter {number}.",
        source_text=text if text is not None else f"USER: events of chapter {number}",
        created_at=datetime(2025, 1, number, tzinfo=timezone.utc),
        metadata=ChapterMetadata(characters=[f"Hero{number}"], locations=[f"Place{number}"]),
    )


def make_index(count: int, *, per_chapter: int = 10) -> ChapterIndex:
    index = ChapterIndex()
    for number in range(1, count + 1):
        start = (number - 1) * per_chapter + 1
        index.append(make_chapter(number, start, start + per_chapter - 1))
    return index


def make_turns(count: int, start: int = 1) -> list[Turn]:
    return [
        Turn(
            turn_id=f"turn-{position}",
            role="user" if position % 2 else "assistant",
            content=f"Story line {position}.",
            position=position,
        )
        for position in range(start, start + count)
    ]


def fill_transcript(store: SQLiteStore, count: int) -> None:
    start = store.count_turns() + 1
    for turn in make_turns(count, start=start):
        store.append_turn(turn.role, turn.content, turn_id=turn.turn_id)


def build_orchestrator(
    store: SQLiteStore,
    llm: ScriptedLLM,
    config: RetrievalConfig | None = None,
    *,
    entries=None,
) -> MemoryOrchestrator:
    summarizer = ChapterSummarizer(llm, llm, NO_RETRY_DELAY)
    executor = QueryExecutor(llm, NO_RETRY_DELAY)
    return MemoryOrchestrator(
        transcript=store,
        index=ChapterIndex.load(store),
        segmenter=ChapterSegmenter(llm, summarizer, NO_RETRY_DELAY),
        static_planner=StaticRetrievalPlanner(llm, executor, NO_RETRY_DELAY),
        agentic_planner=AgenticRetrievalPlanner(llm, executor, entries, NO_RETRY_DELAY),
        config=config or RetrievalConfig(),
        retrieval_log=store,
    )
