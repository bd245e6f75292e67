from __future__ import annotations

import hashlib
import logging
from typing import Sequence

from config.settings import RetrievalConfig
from memory.errors import MalformedOutput, OperationFailed
from memory.llm_client import ModelClient, RetryPolicy, request_json, with_retries
from memory.models import Chapter, EndpointSelection, Turn, utc_now
from memory.summarizer import ChapterSummarizer, render_turns

logger = logging.getLogger(__name__)

FIRST_CHAPTER_SENTINEL = "(none: this will be the first chapter)"
_MAX_TURN_CHARS = 800


class ChapterSegmenter:
    """Decides when the unassigned transcript tail becomes a chapter, and where it ends."""

    def __init__(
        self,
        llm: ModelClient,
        summarizer: ChapterSummarizer,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.llm = llm
        self.summarizer = summarizer
        self.retry_policy = retry_policy or RetryPolicy()

    @staticmethod
    def is_due(unassigned_count: int, config: RetrievalConfig) -> bool:
        # The newest buffer_turns turns are never eligible as a chapter ending.
        return unassigned_count >= config.trigger_turns

    @staticmethod
    def candidate_window(unassigned: Sequence[Turn], config: RetrievalConfig) -> list[Turn]:
        return list(unassigned[: config.chapter_threshold])

    async def select_endpoint(
        self,
        candidates: Sequence[Turn],
        prior_summary: str | None,
    ) -> EndpointSelection:
        if not candidates:
            raise ValueError("select_endpoint needs at least one candidate turn")

        by_id = {turn.turn_id: turn for turn in candidates}
        system_prompt = (
            "You divide an interactive story into chapters. Pick the single most natural "
            "story-beat boundary. Return strict JSON only."
        )
        user_prompt = (
            "Choose the turn that should END the next chapter.\n"
            "Prefer scene transitions, emotional beats, revelations or time skips. "
            "Never split in the middle of a scene.\n"
            "JSON schema:\n"
            "{\n"
            '  "endpoint_turn_id": "id of one candidate turn",\n'
            '  "rationale": "one sentence",\n'
            '  "suggested_title": "short chapter title"\n'
            "}\n\n"
            f"PREVIOUS CHAPTER SUMMARY:\n{prior_summary or FIRST_CHAPTER_SENTINEL}\n\n"
            f"CANDIDATE TURNS:\n{_render_candidates(candidates)}"
        )

        async def attempt() -> EndpointSelection:
            parsed = await request_json(
                self.llm,
                system_prompt,
                user_prompt,
                required_keys=("endpoint_turn_id",),
                max_tokens=300,
            )
            payload = parsed.payload
            endpoint_id = str(payload.get("endpoint_turn_id", "")).strip()
            if endpoint_id not in by_id:
                raise MalformedOutput(f"Endpoint {endpoint_id!r} is outside the candidate window")
            title = str(payload.get("suggested_title") or "").strip() or None
            return EndpointSelection(
                endpoint_turn_id=endpoint_id,
                rationale=str(payload.get("rationale", "")).strip(),
                suggested_title=title,
            )

        try:
            return await with_retries(attempt, policy=self.retry_policy, label="select chapter endpoint")
        except OperationFailed:
            logger.warning(
                "Endpoint selection failed; closing the chapter at candidate turn %d",
                len(candidates),
            )
            return EndpointSelection(
                endpoint_turn_id=candidates[-1].turn_id,
                rationale="Fallback: closed at the chapter size limit.",
                fallback=True,
            )

    async def create_chapter(
        self,
        unassigned: Sequence[Turn],
        *,
        number: int,
        config: RetrievalConfig,
        prior_summary: str | None = None,
        suggested_title: str | None = None,
    ) -> Chapter:
        candidates = self.candidate_window(unassigned, config)
        selection = await self.select_endpoint(candidates, prior_summary)
        end_index = next(
            idx for idx, turn in enumerate(candidates) if turn.turn_id == selection.endpoint_turn_id
        )
        logger.info(
            "Chapter %d endpoint: turn %d of %d (%s)",
            number,
            end_index + 1,
            len(candidates),
            selection.rationale or "no rationale",
        )
        return await self.build_chapter(
            candidates[: end_index + 1],
            number=number,
            title=suggested_title or selection.suggested_title,
        )

    async def build_chapter(
        self,
        members: Sequence[Turn],
        *,
        number: int,
        title: str | None = None,
    ) -> Chapter:
        if not members:
            raise ValueError("A chapter needs at least one turn")

        # Metadata is extracted from the summary, so the two calls stay sequential.
        summary = await self.summarizer.summarize(members, number)
        metadata = await self.summarizer.extract_metadata(members, summary)

        first = members[0]
        last = members[-1]
        return Chapter(
            chapter_id=_chapter_id(number, first.turn_id, last.turn_id),
            number=number,
            title=title,
            start_turn_id=first.turn_id,
            end_turn_id=last.turn_id,
            start_position=first.position,
            end_position=last.position,
            turn_count=len(members),
            summary=summary,
            source_text=render_turns(members),
            created_at=utc_now(),
            metadata=metadata,
        )


def _render_candidates(turns: Sequence[Turn]) -> str:
    lines = []
    for turn in turns:
        content = turn.content.strip()
        if len(content) > _MAX_TURN_CHARS:
            content = content[: _MAX_TURN_CHARS - 3] + "..."
        lines.append(f"[{turn.turn_id}] {turn.role.upper()}: {content}")
    return "\n".join(lines)


def _chapter_id(number: int, start_turn_id: str, end_turn_id: str) -> str:
    raw = f"chapter|{number}|{start_turn_id}|{end_turn_id}".encode("utf-8")
    return hashlib.sha1(raw).hexdigest()
