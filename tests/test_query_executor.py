from __future__ import annotations

import pytest

from helpers import NO_RETRY_DELAY, QUERY, ScriptedLLM, make_chapter, make_index
from memory.errors import OperationFailed, TransientModelFailure
from memory.query import QueryExecutor, fit_range_to_budget, is_not_found_answer


def _long_chapters() -> list:
    return [
        make_chapter(number, number * 10 - 9, number * 10, text=f"[ch{number}]" + "x" * 395)
        for number in range(2, 6)
    ]


def test_not_found_detection() -> None:
    assert is_not_found_answer("Not found.")
    assert is_not_found_answer("  not found  ")
    assert is_not_found_answer("Not found: the chapter never mentions the key.")
    assert not is_not_found_answer("The key was found under the mat.")


def test_budget_drops_oldest_chapters_first() -> None:
    blocks, dropped, cut = fit_range_to_budget(_long_chapters(), token_budget=250)

    assert dropped == [2, 3]
    assert cut is None
    assert len(blocks) == 2
    assert blocks[0].startswith("=== Chapter 4 ===")
    assert blocks[1].startswith("=== Chapter 5 ===")


def test_budget_keeps_tail_of_oversized_newest_chapter() -> None:
    chapter = make_chapter(3, 21, 30, text="BEGINNING " + "y" * 500 + " THE-END")
    blocks, dropped, cut = fit_range_to_budget([chapter], token_budget=40)

    assert dropped == []
    assert cut == 3
    assert len(blocks) == 1
    assert blocks[0].startswith("=== Chapter 3 ===")
    assert blocks[0].endswith("THE-END")
    assert "BEGINNING" not in blocks[0]


@pytest.mark.asyncio
async def test_query_chapter_sends_only_that_chapter() -> None:
    llm = ScriptedLLM(lambda system, user: "Tobin hid the map in the lighthouse.")
    chapter = make_chapter(3, 21, 30, text="USER: Where is the map?\n\nASSISTANT: Tobin hides it.")

    result = await QueryExecutor(llm, NO_RETRY_DELAY).query_chapter(chapter, "Where is the map?")

    assert result.chapter_number == 3
    assert result.chapter_range is None
    assert result.target == "3"
    assert result.answer == "Tobin hid the map in the lighthouse."
    prompt = llm.calls_for(QUERY)[0]
    assert "Where is the map?" in prompt
    assert "Tobin hides it." in prompt


@pytest.mark.asyncio
async def test_query_range_reports_truncation() -> None:
    llm = ScriptedLLM(lambda system, user: "The storm began in chapter 4.")
    result = await QueryExecutor(llm, NO_RETRY_DELAY).query_range(
        _long_chapters(),
        "When did the storm begin?",
        token_budget=250,
    )

    prompt = llm.calls_for(QUERY)[0]
    assert "[ch4]" in prompt and "[ch5]" in prompt
    assert "[ch2]" not in prompt and "[ch3]" not in prompt
    assert result.chapter_range == (2, 5)
    assert result.target == "2-5"
    assert result.truncated_chapters == [2, 3]
    assert result.answer.startswith("The storm began in chapter 4.")
    assert "chapters 2, 3" in result.answer


@pytest.mark.asyncio
async def test_query_range_notes_a_cut_chapter() -> None:
    llm = ScriptedLLM(lambda system, user: "Tobin did it.")
    chapter = make_chapter(3, 21, 30, text="BEGINNING " + "y" * 500 + " THE-END")

    result = await QueryExecutor(llm, NO_RETRY_DELAY).query_range([chapter], "Who did it?", token_budget=40)

    assert "BEGINNING" not in llm.calls_for(QUERY)[0]
    assert result.truncated_chapters == [3]
    assert result.answer.startswith("Tobin did it.")
    assert "chapter 3 was cut to its most recent text" in result.answer


@pytest.mark.asyncio
async def test_query_range_within_budget_has_no_note() -> None:
    llm = ScriptedLLM(lambda system, user: "Mara and Tobin.")
    chapters = make_index(3).all()
    result = await QueryExecutor(llm, NO_RETRY_DELAY).query_range(
        chapters,
        "Who travelled together?",
        token_budget=24000,
    )

    assert result.answer == "Mara and Tobin."
    assert result.truncated_chapters == []
    prompt = llm.calls_for(QUERY)[0]
    for number in (1, 2, 3):
        assert f"=== Chapter {number} ===" in prompt


@pytest.mark.asyncio
async def test_query_failure_escalates_after_retries() -> None:
    def handler(system: str, user: str) -> str:
        raise TransientModelFailure("upstream 503")

    llm = ScriptedLLM(handler)
    with pytest.raises(OperationFailed):
        await QueryExecutor(llm, NO_RETRY_DELAY).query_chapter(make_chapter(1, 1, 10), "Anything?")
    assert len(llm.calls) == 5
