from __future__ import annotations

import logging
from typing import Sequence

from memory.llm_client import ModelClient, RetryPolicy, request_json, request_text, with_retries
from memory.models import ChapterMetadata, Turn

logger = logging.getLogger(__name__)

_METADATA_KEYS = ("keywords", "characters", "locations", "plot_threads", "emotional_tone")


def render_turns(turns: Sequence[Turn]) -> str:
    return "\n\n".join(f"{turn.role.upper()}: {turn.content.strip()}" for turn in turns)


class ChapterSummarizer:
    """Chapter summary on the flagship tier, metadata extraction on the fast tier."""

    def __init__(
        self,
        llm: ModelClient,
        fast_llm: ModelClient | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.llm = llm
        self.fast_llm = fast_llm or llm
        self.retry_policy = retry_policy or RetryPolicy()

    async def summarize(self, turns: Sequence[Turn], chapter_number: int) -> str:
        system_prompt = (
            "You are the archivist of an interactive story. You write chapter summaries "
            "that a later reader uses to recall what happened. Return plain prose only."
        )
        user_prompt = (
            f"Summarize chapter {chapter_number} of the story in 2 to 4 paragraphs.\n"
            "Cover the plot events, character developments, newly introduced characters, "
            "places and objects, and any change in relationships between characters.\n"
            "Stay factual and do not invent anything the text does not show.\n\n"
            f"CHAPTER TEXT:\n{render_turns(turns)}"
        )
        summary = await with_retries(
            lambda: request_text(self.llm, system_prompt, user_prompt, max_tokens=1200),
            policy=self.retry_policy,
            label=f"summarize chapter {chapter_number}",
        )
        logger.debug("Chapter %d summary: %d chars", chapter_number, len(summary))
        return summary

    async def extract_metadata(self, turns: Sequence[Turn], summary: str) -> ChapterMetadata:
        system_prompt = (
            "You extract structured retrieval metadata from a story chapter summary. "
            "Return strict JSON only."
        )
        user_prompt = (
            f"The summary below covers {len(turns)} story turns.\n"
            "Extract metadata grounded in the summary only.\n"
            "JSON schema:\n"
            "{\n"
            '  "keywords": ["up to 10 short search keywords"],\n'
            '  "characters": ["names of characters who appear"],\n'
            '  "locations": ["names of places visited or described"],\n'
            '  "plot_threads": ["open storylines still active at the end"],\n'
            '  "emotional_tone": "one line"\n'
            "}\n\n"
            f"SUMMARY:\n{summary}"
        )
        parsed = await with_retries(
            lambda: request_json(
                self.fast_llm,
                system_prompt,
                user_prompt,
                required_keys=_METADATA_KEYS,
                max_tokens=600,
            ),
            policy=self.retry_policy,
            label="extract chapter metadata",
        )
        payload = parsed.payload
        return ChapterMetadata(
            keywords=_coerce_names(payload.get("keywords"), limit=10),
            characters=_coerce_names(payload.get("characters")),
            locations=_coerce_names(payload.get("locations")),
            plot_threads=_coerce_names(payload.get("plot_threads")),
            emotional_tone=str(payload.get("emotional_tone") or "").strip(),
        )


def _coerce_names(value: object, limit: int = 30) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        return []

    names: list[str] = []
    seen: set[str] = set()
    for item in value:
        clean = str(item).strip()
        if not clean or clean.lower() in seen:
            continue
        seen.add(clean.lower())
        names.append(clean)
        if len(names) >= limit:
            break
    return names
