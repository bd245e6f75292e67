from __future__ import annotations

import json

import pytest

from helpers import (
    ENDPOINT,
    METADATA,
    NO_RETRY_DELAY,
    SUMMARY,
    ScriptedLLM,
    make_turns,
    metadata_json,
)
from config.settings import RetrievalConfig
from memory.errors import OperationFailed, TransientModelFailure
from memory.segmenter import FIRST_CHAPTER_SENTINEL, ChapterSegmenter
from memory.summarizer import ChapterSummarizer


def _segmenter(llm: ScriptedLLM) -> ChapterSegmenter:
    return ChapterSegmenter(llm, ChapterSummarizer(llm, llm, NO_RETRY_DELAY), NO_RETRY_DELAY)


def _router(endpoint: str = "turn-30", summary: str = "Mara reached the lighthouse."):
    def handler(system: str, user: str) -> str:
        if ENDPOINT in system:
            return json.dumps(
                {"endpoint_turn_id": endpoint, "rationale": "storm ends", "suggested_title": "The Storm"}
            )
        if SUMMARY in system:
            return summary
        if METADATA in system:
            return metadata_json()
        raise AssertionError(f"unexpected call: {system[:40]}")

    return handler


def test_threshold_trigger() -> None:
    config = RetrievalConfig(chapter_threshold=50, buffer_turns=10)
    assert not ChapterSegmenter.is_due(59, config)
    assert ChapterSegmenter.is_due(60, config)
    assert ChapterSegmenter.is_due(61, config)


def test_candidate_window_is_oldest_n_turns() -> None:
    window = ChapterSegmenter.candidate_window(make_turns(61), RetrievalConfig())
    assert len(window) == 50
    assert window[0].position == 1
    assert window[-1].position == 50


@pytest.mark.asyncio
async def test_select_endpoint_returns_model_choice() -> None:
    llm = ScriptedLLM(_router(endpoint="turn-20"))
    selection = await _segmenter(llm).select_endpoint(make_turns(50), None)

    assert selection.endpoint_turn_id == "turn-20"
    assert selection.suggested_title == "The Storm"
    assert not selection.fallback
    assert FIRST_CHAPTER_SENTINEL in llm.calls_for(ENDPOINT)[0]


@pytest.mark.asyncio
async def test_select_endpoint_retries_out_of_window_answer() -> None:
    answers = iter(["turn-77", "turn-12"])

    def handler(system: str, user: str) -> str:
        return json.dumps({"endpoint_turn_id": next(answers), "rationale": "beat"})

    llm = ScriptedLLM(handler)
    selection = await _segmenter(llm).select_endpoint(make_turns(50), "Earlier events.")

    assert selection.endpoint_turn_id == "turn-12"
    assert len(llm.calls) == 2
    assert "Earlier events." in llm.calls[0][1]


@pytest.mark.asyncio
async def test_select_endpoint_falls_back_to_nth_turn() -> None:
    llm = ScriptedLLM(lambda system, user: '{"endpoint_turn_id": "turn-999"}')
    selection = await _segmenter(llm).select_endpoint(make_turns(50), None)

    assert selection.fallback
    assert selection.endpoint_turn_id == "turn-50"
    assert len(llm.calls) == 5


@pytest.mark.asyncio
async def test_select_endpoint_falls_back_on_transient_failures() -> None:
    def handler(system: str, user: str) -> str:
        raise TransientModelFailure("timeout")

    selection = await _segmenter(ScriptedLLM(handler)).select_endpoint(make_turns(50), None)
    assert selection.fallback
    assert selection.endpoint_turn_id == "turn-50"


@pytest.mark.asyncio
async def test_create_chapter_builds_complete_record() -> None:
    llm = ScriptedLLM(_router(endpoint="turn-30"))
    chapter = await _segmenter(llm).create_chapter(
        make_turns(61),
        number=1,
        config=RetrievalConfig(),
    )

    assert chapter.number == 1
    assert chapter.start_turn_id == "turn-1"
    assert chapter.end_turn_id == "turn-30"
    assert (chapter.start_position, chapter.end_position, chapter.turn_count) == (1, 30, 30)
    assert chapter.title == "The Storm"
    assert chapter.summary == "Mara reached the lighthouse."
    assert chapter.metadata.characters == ["Mara", "Tobin"]
    assert chapter.metadata.emotional_tone == "tense and hopeful"
    assert "Story line 30." in chapter.source_text
    assert "Story line 31." not in chapter.source_text


@pytest.mark.asyncio
async def test_metadata_is_extracted_from_the_summary_after_it_exists() -> None:
    llm = ScriptedLLM(_router(summary="UNIQUE-SUMMARY-TEXT"))
    await _segmenter(llm).create_chapter(make_turns(60), number=1, config=RetrievalConfig())

    order = [
        marker
        for system, _user in llm.calls
        for marker in (ENDPOINT, SUMMARY, METADATA)
        if marker in system
    ]
    assert order == [ENDPOINT, SUMMARY, METADATA]
    metadata_prompt = llm.calls_for(METADATA)[0]
    assert "UNIQUE-SUMMARY-TEXT" in metadata_prompt
    assert "Story line 5." not in metadata_prompt


@pytest.mark.asyncio
async def test_suggested_title_from_classifier_wins() -> None:
    llm = ScriptedLLM(_router())
    chapter = await _segmenter(llm).create_chapter(
        make_turns(60),
        number=1,
        config=RetrievalConfig(),
        suggested_title="Into the Fog",
    )
    assert chapter.title == "Into the Fog"


@pytest.mark.asyncio
async def test_summary_failure_abandons_creation() -> None:
    def handler(system: str, user: str) -> str:
        if ENDPOINT in system:
            return '{"endpoint_turn_id": "turn-10"}'
        if SUMMARY in system:
            return "   "
        return metadata_json()

    llm = ScriptedLLM(handler)
    with pytest.raises(OperationFailed):
        await _segmenter(llm).create_chapter(make_turns(60), number=1, config=RetrievalConfig())
    assert llm.calls_for(METADATA) == []


@pytest.mark.asyncio
async def test_metadata_missing_field_is_retried() -> None:
    answers = iter(['{"keywords": ["x"]}', metadata_json(characters="Mara, Tobin, mara")])

    def handler(system: str, user: str) -> str:
        if METADATA in system:
            return next(answers)
        return "A summary."

    llm = ScriptedLLM(handler)
    summarizer = ChapterSummarizer(llm, llm, NO_RETRY_DELAY)
    metadata = await summarizer.extract_metadata(make_turns(5), "A summary.")

    assert metadata.characters == ["Mara", "Tobin"]
    assert len(llm.calls_for(METADATA)) == 2
