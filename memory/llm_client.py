from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
import re
from typing import Any, Awaitable, Callable, Protocol, Sequence, TypeVar

from json_repair import repair_json
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
import openai

from config.settings import Settings
from memory.errors import MalformedOutput, ModelCallError, OperationFailed, TransientModelFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

_JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)
_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")

_TRANSIENT_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class ModelClient(Protocol):
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        additional_messages: Sequence[BaseMessage] | None = None,
        temperature: float | None = None,
        max_tokens: int = 900,
    ) -> str: ...


class ChatModelClient:
    """OpenAI-compatible chat model, one instance per model tier."""

    def __init__(self, settings: Settings, *, model_name: str | None = None) -> None:
        self.settings = settings
        self.model_name = model_name or settings.model_name
        self.enabled = bool(settings.openrouter_api_key)
        self.model: ChatOpenAI | None = None
        if self.enabled:
            self.model = ChatOpenAI(
                model=self.model_name,
                api_key=settings.openrouter_api_key,
                base_url=settings.openrouter_base_url,
                temperature=settings.model_temperature,
                timeout=settings.request_timeout_seconds,
                max_retries=0,
                default_headers={
                    "HTTP-Referer": "https://localhost/story-memory",
                    "X-Title": "StoryMemory",
                },
            )

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        additional_messages: Sequence[BaseMessage] | None = None,
        temperature: float | None = None,
        max_tokens: int = 900,
    ) -> str:
        if not self.model:
            raise OperationFailed("OPENROUTER_API_KEY is missing. Cannot call model.")

        messages: list[BaseMessage] = [SystemMessage(content=system_prompt)]
        messages.extend(additional_messages or [])
        messages.append(HumanMessage(content=user_prompt))

        bound = self.model.bind(
            temperature=temperature if temperature is not None else self.settings.model_temperature,
            max_tokens=max_tokens,
        )
        try:
            response = await bound.ainvoke(messages)
        except _TRANSIENT_ERRORS as exc:
            raise TransientModelFailure(f"{self.model_name}: {exc}") from exc
        except openai.APIError as exc:
            raise OperationFailed(f"{self.model_name}: {exc}") from exc
        return _coerce_content(response.content)


def build_model_clients(settings: Settings) -> tuple[ChatModelClient, ChatModelClient]:
    """Return the (flagship, fast) model tiers."""
    flagship = ChatModelClient(settings)
    fast = ChatModelClient(settings, model_name=settings.fast_model_name)
    return flagship, fast


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(attempts=settings.retry_attempts, base_delay=settings.retry_base_delay)


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    label: str,
) -> T:
    last_error: ModelCallError | None = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return await operation()
        except ModelCallError as exc:
            last_error = exc
            logger.warning("%s attempt %d/%d failed: %s", label, attempt, policy.attempts, exc)
            if attempt < policy.attempts:
                delay = policy.delay_for(attempt)
                if delay > 0:
                    await asyncio.sleep(delay)
    raise OperationFailed(f"{label} failed after {policy.attempts} attempts") from last_error


@dataclass(frozen=True, slots=True)
class ParsedJson:
    payload: dict[str, Any]
    outcome: str

    @property
    def repaired(self) -> bool:
        return self.outcome == "repaired"


def parse_json_payload(text: str) -> ParsedJson:
    """Parse a model's JSON object, healing near-JSON when needed.

    The outcome is ``"clean"`` when the text (minus code fences) was valid
    JSON and ``"repaired"`` when it had to be extracted from prose or fixed
    by json-repair.
    """
    stripped = _FENCE_RE.sub("", text.strip()).strip()
    if not stripped:
        raise MalformedOutput("Empty model response")

    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        parsed = None
    else:
        if isinstance(parsed, dict):
            return ParsedJson(payload=parsed, outcome="clean")
        raise MalformedOutput(f"Expected a JSON object, got {type(parsed).__name__}")

    match = _JSON_BLOCK_RE.search(stripped)
    candidate = match.group(0) if match else stripped
    try:
        repaired = repair_json(candidate, return_objects=True)
    except Exception as exc:
        raise MalformedOutput(f"Unrepairable JSON: {exc}") from exc
    if not isinstance(repaired, dict) or not repaired:
        raise MalformedOutput(f"Unrepairable JSON: {stripped[:200]!r}")
    return ParsedJson(payload=repaired, outcome="repaired")


async def request_json(
    llm: ModelClient,
    system_prompt: str,
    user_prompt: str,
    *,
    required_keys: Sequence[str] = (),
    additional_messages: Sequence[BaseMessage] | None = None,
    temperature: float | None = None,
    max_tokens: int = 900,
) -> ParsedJson:
    content = await llm.complete(
        system_prompt,
        user_prompt,
        additional_messages=additional_messages,
        temperature=temperature,
        max_tokens=max_tokens,
    )
    parsed = parse_json_payload(content)
    missing = [key for key in required_keys if key not in parsed.payload]
    if missing:
        raise MalformedOutput(f"Model JSON is missing keys: {', '.join(missing)}")
    if parsed.repaired:
        logger.info("Repaired near-JSON model output (%d chars)", len(content))
    return parsed


async def request_text(
    llm: ModelClient,
    system_prompt: str,
    user_prompt: str,
    *,
    max_tokens: int = 900,
) -> str:
    content = (await llm.complete(system_prompt, user_prompt, max_tokens=max_tokens)).strip()
    if not content:
        raise MalformedOutput("Empty model response")
    return content


def _coerce_content(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
        return "".join(parts)
    return str(content or "")
