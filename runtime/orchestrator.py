from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Sequence

from config.settings import RetrievalConfig, Settings, retrieval_config_from_settings
from memory.chapter_index import ChapterIndex
from memory.errors import OperationFailed
from memory.llm_client import build_model_clients, retry_policy_from_settings
from memory.models import Chapter, ClassificationSignal, RetrievedContext, Turn
from memory.query import QueryExecutor
from memory.segmenter import ChapterSegmenter
from memory.storage.sqlite_store import SQLiteStore
from memory.summarizer import ChapterSummarizer
from runtime.agentic import AgenticRetrievalPlanner, EntryProvider
from runtime.retrieval import RetrievalPlanner, StaticRetrievalPlanner, choose_strategy

logger = logging.getLogger(__name__)


class TranscriptReader(Protocol):
    def list_turns(self, after_position: int = 0) -> list[Turn]: ...


class RetrievalLog(Protocol):
    def log_retrieval(
        self,
        user_input: str,
        *,
        strategy: str,
        targets: Sequence[str],
        complete: bool = True,
    ) -> None: ...


class MemoryOrchestrator:
    """Lifecycle hooks the rest of the application calls into.

    ``on_user_turn`` sits on the narration critical path. ``on_assistant_turn_classified``
    hands back the chapter-creation task instead of blocking on it; at most one such task
    runs at a time.
    """

    def __init__(
        self,
        *,
        transcript: TranscriptReader,
        index: ChapterIndex,
        segmenter: ChapterSegmenter,
        static_planner: RetrievalPlanner,
        agentic_planner: RetrievalPlanner,
        config: RetrievalConfig,
        retrieval_log: RetrievalLog | None = None,
    ) -> None:
        self.transcript = transcript
        self.index = index
        self.segmenter = segmenter
        self.planners: dict[str, RetrievalPlanner] = {
            "static": static_planner,
            "agentic": agentic_planner,
        }
        self.retrieval_log = retrieval_log
        self._config = config
        self._creation_lock = asyncio.Lock()
        self._creation_task: asyncio.Task[Chapter | None] | None = None
        self._retrieval_task: asyncio.Task[RetrievedContext | None] | None = None

    @property
    def config(self) -> RetrievalConfig:
        return self._config

    def update_config(self, config: RetrievalConfig) -> None:
        # Decisions already running keep the snapshot they started with.
        self._config = config

    @property
    def pending_chapter_task(self) -> asyncio.Task[Chapter | None] | None:
        task = self._creation_task
        return task if task is not None and not task.done() else None

    def unassigned_turns(self) -> list[Turn]:
        return self.transcript.list_turns(after_position=self.index.next_start_position - 1)

    def planner_for(self, config: RetrievalConfig, chapter_count: int) -> RetrievalPlanner:
        return self.planners[choose_strategy(config, chapter_count)]

    async def on_user_turn(self, turn_text: str) -> RetrievedContext | None:
        config = self._config
        if self.index.count == 0:
            return None

        previous = self._retrieval_task
        if previous is not None and not previous.done():
            logger.info("New user turn supersedes an in-flight retrieval")
            previous.cancel()

        task = asyncio.create_task(self._retrieve(turn_text, config))
        self._retrieval_task = task
        try:
            return await task
        finally:
            if self._retrieval_task is task:
                self._retrieval_task = None

    def cancel_retrieval(self) -> bool:
        task = self._retrieval_task
        if task is None or task.done():
            return False
        return task.cancel()

    async def _retrieve(self, turn_text: str, config: RetrievalConfig) -> RetrievedContext | None:
        planner = self.planner_for(config, self.index.count)
        context = await planner.retrieve(turn_text, self.index, config)
        if context is None:
            logger.info("%s retrieval degraded to no context", planner.strategy)
        elif self.retrieval_log is not None:
            self.retrieval_log.log_retrieval(
                turn_text,
                strategy=context.strategy,
                targets=[result.target for result in context.results],
                complete=context.complete,
            )
        return context

    def on_assistant_turn_classified(
        self,
        signal: ClassificationSignal,
    ) -> asyncio.Task[Chapter | None] | None:
        """Schedule chapter creation when the boundary is due. Must run inside an event loop."""
        if not signal.chapter_boundary_due:
            return None

        pending = self.pending_chapter_task
        if pending is not None:
            logger.debug("Chapter creation already in flight; ignoring duplicate signal")
            return pending

        config = self._config
        if not self.segmenter.is_due(len(self.unassigned_turns()), config):
            return None

        task = asyncio.create_task(self._create_chapter(config, signal.suggested_title))
        self._creation_task = task
        return task

    async def _create_chapter(self, config: RetrievalConfig, suggested_title: str | None) -> Chapter | None:
        async with self._creation_lock:
            unassigned = self.unassigned_turns()
            if not self.segmenter.is_due(len(unassigned), config):
                return None

            prior = self.index.last()
            number = self.index.count + 1
            try:
                chapter = await self.segmenter.create_chapter(
                    unassigned,
                    number=number,
                    config=config,
                    prior_summary=prior.summary if prior else None,
                    suggested_title=suggested_title,
                )
            except OperationFailed as exc:
                logger.warning("Chapter %d creation abandoned for this cycle: %s", number, exc)
                return None

            self.index.append(chapter)
            logger.info(
                "Committed chapter %d (turns %d-%d, %d turns)",
                chapter.number,
                chapter.start_position,
                chapter.end_position,
                chapter.turn_count,
            )
            return chapter

    async def close_chapter(self, end_turn_id: str, *, title: str | None = None) -> Chapter:
        """Close the unassigned tail at an explicit turn, skipping threshold and endpoint selection."""
        async with self._creation_lock:
            unassigned = self.unassigned_turns()
            end_index = next(
                (idx for idx, turn in enumerate(unassigned) if turn.turn_id == end_turn_id),
                None,
            )
            if end_index is None:
                raise ValueError(f"Turn {end_turn_id!r} is not in the unassigned transcript tail")

            chapter = await self.segmenter.build_chapter(
                unassigned[: end_index + 1],
                number=self.index.count + 1,
                title=title,
            )
            self.index.append(chapter)
            logger.info("Manually closed chapter %d at turn %d", chapter.number, chapter.end_position)
            return chapter


def build_orchestrator(
    settings: Settings,
    store: SQLiteStore | None = None,
    *,
    entries: EntryProvider | None = None,
) -> MemoryOrchestrator:
    store = store or SQLiteStore(settings.sqlite_path)
    llm, fast_llm = build_model_clients(settings)
    retry_policy = retry_policy_from_settings(settings)

    summarizer = ChapterSummarizer(llm, fast_llm, retry_policy)
    executor = QueryExecutor(fast_llm, retry_policy)
    return MemoryOrchestrator(
        transcript=store,
        index=ChapterIndex.load(store),
        segmenter=ChapterSegmenter(llm, summarizer, retry_policy),
        static_planner=StaticRetrievalPlanner(fast_llm, executor, retry_policy),
        agentic_planner=AgenticRetrievalPlanner(llm, executor, entries, retry_policy),
        config=retrieval_config_from_settings(settings),
        retrieval_log=store,
    )
