from __future__ import annotations

import pytest

from helpers import NO_RETRY_DELAY, ScriptedLLM
from memory.errors import MalformedOutput, OperationFailed, TransientModelFailure
from memory.llm_client import RetryPolicy, parse_json_payload, request_json, with_retries


def test_parse_clean_json() -> None:
    parsed = parse_json_payload('{"endpoint_turn_id": "t3", "rationale": "scene ends"}')
    assert parsed.outcome == "clean"
    assert not parsed.repaired
    assert parsed.payload["endpoint_turn_id"] == "t3"


def test_parse_fenced_json_is_clean() -> None:
    parsed = parse_json_payload('```json\n{"queries": []}\n```')
    assert parsed.outcome == "clean"
    assert parsed.payload == {"queries": []}


def test_parse_json_wrapped_in_prose_is_repaired() -> None:
    parsed = parse_json_payload('Sure, here you go: {"queries": []} Let me know!')
    assert parsed.outcome == "repaired"
    assert parsed.payload == {"queries": []}


def test_parse_near_json_is_repaired() -> None:
    parsed = parse_json_payload("{'chapter': 3, 'question': 'Who stole the map?',}")
    assert parsed.repaired
    assert parsed.payload["chapter"] == 3
    assert parsed.payload["question"] == "Who stole the map?"


def test_parse_rejects_non_json_and_non_objects() -> None:
    with pytest.raises(MalformedOutput):
        parse_json_payload("   ")
    with pytest.raises(MalformedOutput):
        parse_json_payload("no structured answer here")
    with pytest.raises(MalformedOutput):
        parse_json_payload("[1, 2, 3]")


def test_retry_delay_grows_exponentially() -> None:
    policy = RetryPolicy(attempts=5, base_delay=0.5, max_delay=3.0)
    assert [policy.delay_for(n) for n in range(1, 5)] == [0.5, 1.0, 2.0, 3.0]


@pytest.mark.asyncio
async def test_with_retries_recovers_from_transient_failures() -> None:
    attempts = []

    async def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientModelFailure("rate limited")
        return "ok"

    assert await with_retries(flaky, policy=NO_RETRY_DELAY, label="flaky") == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_with_retries_escalates_after_budget() -> None:
    attempts = []

    async def broken() -> str:
        attempts.append(1)
        raise MalformedOutput("missing field")

    with pytest.raises(OperationFailed) as excinfo:
        await with_retries(broken, policy=NO_RETRY_DELAY, label="broken")
    assert len(attempts) == 5
    assert isinstance(excinfo.value.__cause__, MalformedOutput)


@pytest.mark.asyncio
async def test_with_retries_does_not_retry_terminal_failures() -> None:
    attempts = []

    async def denied() -> str:
        attempts.append(1)
        raise OperationFailed("invalid api key")

    with pytest.raises(OperationFailed):
        await with_retries(denied, policy=NO_RETRY_DELAY, label="denied")
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_request_json_checks_expected_shape() -> None:
    llm = ScriptedLLM(lambda system, user: '{"rationale": "no endpoint given"}')
    with pytest.raises(MalformedOutput):
        await request_json(llm, "system", "user", required_keys=("endpoint_turn_id",))

    llm = ScriptedLLM(lambda system, user: '{"endpoint_turn_id": "turn-4"')
    parsed = await request_json(llm, "system", "user", required_keys=("endpoint_turn_id",))
    assert parsed.repaired
    assert parsed.payload["endpoint_turn_id"] == "turn-4"
