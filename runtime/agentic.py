from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
from typing import Any, Protocol, Sequence, TypedDict, Union

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langgraph.graph import END, START, StateGraph

from config.settings import RetrievalConfig
from memory.chapter_index import ChapterIndex
from memory.errors import MalformedOutput, OperationFailed
from memory.llm_client import ModelClient, RetryPolicy, request_json, with_retries
from memory.models import Entry, QueryResult, RetrievedContext
from memory.query import QueryExecutor, is_not_found_answer
from runtime.retrieval import render_previews

logger = logging.getLogger(__name__)


class EntryProvider(Protocol):
    def list_entries(self) -> Sequence[Entry]: ...


@dataclass(frozen=True, slots=True)
class ListChapters:
    pass


@dataclass(frozen=True, slots=True)
class QueryChapter:
    chapter: int
    question: str


@dataclass(frozen=True, slots=True)
class QueryChapterRange:
    start: int
    end: int
    question: str


@dataclass(frozen=True, slots=True)
class ListEntries:
    pass


@dataclass(frozen=True, slots=True)
class FinishRetrieval:
    summary: str


ToolCall = Union[ListChapters, QueryChapter, QueryChapterRange, ListEntries, FinishRetrieval]


@dataclass(slots=True)
class ToolOutcome:
    text: str
    result: QueryResult | None = None


_SYSTEM_PROMPT = """You are the memory researcher for an interactive story narrator.
Before the narrator answers the player, you gather the facts from past chapters that the
next passage depends on. Explore with tools, then finish.

Tools:
- list_chapters {}  -> chapter numbers, titles, summaries, characters, locations
- query_chapter {"chapter": int, "question": str}  -> answer from one chapter's full text
- query_chapter_range {"start": int, "end": int, "question": str}  -> answer across chapters
- list_entries {}  -> lorebook entries (characters, places, items) for cross-reference
- finish_retrieval {"summary": str}  -> end the search with a short synthesis of what matters

Return strict JSON only:
{"tool_calls": [{"name": "query_chapter", "arguments": {"chapter": 2, "question": "..."}}]}
Calls in one response run in parallel. Call finish_retrieval alone once you are done;
call it right away when nothing from the past is needed."""


class AgentState(TypedDict, total=False):
    user_input: str
    index: ChapterIndex
    retrieval_config: RetrievalConfig
    messages: list[BaseMessage]
    next_prompt: str
    pending_calls: list[ToolCall]
    results: list[QueryResult]
    iteration: int
    queries_used: int
    finished: bool
    failed: bool
    summary: str


class AgenticRetrievalPlanner:
    """Tool-calling loop over the chapter index, capped at max_agent_iterations."""

    strategy = "agentic"

    def __init__(
        self,
        llm: ModelClient,
        executor: QueryExecutor,
        entries: EntryProvider | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.llm = llm
        self.executor = executor
        self.entries = entries
        self.retry_policy = retry_policy or RetryPolicy()
        self.graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(AgentState)
        builder.add_node("think", self._node_think)
        builder.add_node("act", self._node_act)

        builder.add_edge(START, "think")
        builder.add_conditional_edges(
            "think",
            self._route_after_think,
            {
                "act": "act",
                "done": END,
            },
        )
        builder.add_conditional_edges(
            "act",
            self._route_after_act,
            {
                "think": "think",
                "done": END,
            },
        )
        return builder.compile()

    async def retrieve(
        self,
        user_input: str,
        index: ChapterIndex,
        config: RetrievalConfig,
    ) -> RetrievedContext | None:
        initial_state: AgentState = {
            "user_input": user_input,
            "index": index,
            "retrieval_config": config,
            "messages": [],
            "next_prompt": _initial_prompt(user_input, index.count, config.max_queries_per_turn),
            "pending_calls": [],
            "results": [],
            "iteration": 0,
            "queries_used": 0,
            "finished": False,
            "failed": False,
            "summary": "",
        }
        final_state = await self.graph.ainvoke(
            initial_state,
            config={"recursion_limit": 2 * config.max_agent_iterations + 5},
        )
        if final_state.get("failed"):
            return None

        finished = bool(final_state.get("finished"))
        iterations = int(final_state.get("iteration", 0))
        if not finished:
            logger.info("Agentic retrieval hit the %d iteration cap", iterations)
        return RetrievedContext(
            results=list(final_state.get("results", [])),
            strategy=self.strategy,
            summary=final_state.get("summary") or None,
            complete=finished,
            iterations=iterations,
        )

    async def _node_think(self, state: AgentState) -> AgentState:
        iteration = int(state.get("iteration", 0)) + 1
        prompt = state["next_prompt"]
        history = list(state.get("messages", []))

        async def attempt() -> tuple[dict[str, Any], list[ToolCall]]:
            parsed = await request_json(
                self.llm,
                _SYSTEM_PROMPT,
                prompt,
                required_keys=("tool_calls",),
                additional_messages=history,
                max_tokens=700,
            )
            raw_calls = parsed.payload.get("tool_calls")
            if not isinstance(raw_calls, list):
                raise MalformedOutput("'tool_calls' must be a list")
            return parsed.payload, [parse_tool_call(item) for item in raw_calls]

        try:
            payload, calls = await with_retries(
                attempt,
                policy=self.retry_policy,
                label=f"agentic retrieval iteration {iteration}",
            )
        except OperationFailed as exc:
            logger.warning("Agentic retrieval failed, continuing without context: %s", exc)
            return {"iteration": iteration, "failed": True}

        messages = history + [
            HumanMessage(content=prompt),
            AIMessage(content=json.dumps(payload, ensure_ascii=False)),
        ]
        finish = next((call for call in calls if isinstance(call, FinishRetrieval)), None)
        if finish is not None:
            if len(calls) > 1:
                logger.info("Skipping %d tool calls issued alongside finish_retrieval", len(calls) - 1)
            return {
                "iteration": iteration,
                "messages": messages,
                "pending_calls": [],
                "finished": True,
                "summary": finish.summary,
            }
        return {"iteration": iteration, "messages": messages, "pending_calls": calls}

    async def _node_act(self, state: AgentState) -> AgentState:
        calls = list(state.get("pending_calls", []))
        index = state["index"]
        config = state["retrieval_config"]
        if not calls:
            return {
                "pending_calls": [],
                "next_prompt": "No tools were called. Call a tool, or finish_retrieval if you are done.",
            }

        # Chapter queries share one budget across the whole retrieval.
        limit = config.max_queries_per_turn
        used = int(state.get("queries_used", 0))
        pending = []
        skipped = 0
        for call in calls:
            if isinstance(call, (QueryChapter, QueryChapterRange)):
                if used >= limit:
                    pending.append(_skipped(limit))
                    skipped += 1
                    continue
                used += 1
            pending.append(self._dispatch(call, index, config))
        if skipped:
            logger.info("Skipped %d chapter queries over the %d per-turn budget", skipped, limit)

        outcomes = await asyncio.gather(*pending)
        results = list(state.get("results", []))
        results.extend(outcome.result for outcome in outcomes if outcome.result is not None)
        lines = [f"[{_tool_name(call)}] {outcome.text}" for call, outcome in zip(calls, outcomes)]
        return {
            "pending_calls": [],
            "queries_used": used,
            "results": results,
            "next_prompt": "TOOL RESULTS:\n" + "\n\n".join(lines),
        }

    @staticmethod
    def _route_after_think(state: AgentState) -> str:
        if state.get("failed") or state.get("finished"):
            return "done"
        return "act"

    @staticmethod
    def _route_after_act(state: AgentState) -> str:
        cap = state["retrieval_config"].max_agent_iterations
        return "done" if int(state.get("iteration", 0)) >= cap else "think"

    async def _dispatch(
        self,
        call: ToolCall,
        index: ChapterIndex,
        config: RetrievalConfig,
    ) -> ToolOutcome:
        match call:
            case ListChapters():
                if index.count == 0:
                    return ToolOutcome("No chapters yet.")
                return ToolOutcome(render_previews(index.previews()))

            case QueryChapter(chapter=number, question=question):
                if not 1 <= number <= index.count:
                    return ToolOutcome(f"Chapter {number} does not exist (1-{index.count}).")
                try:
                    result = await self.executor.query_chapter(index.get(number), question)
                except OperationFailed as exc:
                    logger.warning("Agentic query against chapter %d failed: %s", number, exc)
                    return ToolOutcome(f"Query against chapter {number} failed.")
                return _answered(result)

            case QueryChapterRange(start=start, end=end, question=question):
                if not 1 <= start <= end <= index.count:
                    return ToolOutcome(f"Range {start}-{end} is invalid (1-{index.count}).")
                note = ""
                if end - start + 1 > config.max_chapters_per_range:
                    start = end - config.max_chapters_per_range + 1
                    note = f" (range clamped to chapters {start}-{end})"
                try:
                    result = await self.executor.query_range(
                        index.get_range(start, end),
                        question,
                        token_budget=config.range_token_budget,
                    )
                except OperationFailed as exc:
                    logger.warning("Agentic range query %d-%d failed: %s", start, end, exc)
                    return ToolOutcome(f"Query against chapters {start}-{end} failed.")
                outcome = _answered(result)
                outcome.text += note
                return outcome

            case ListEntries():
                entries = list(self.entries.list_entries()) if self.entries else []
                if not entries:
                    return ToolOutcome("No lorebook entries.")
                lines = []
                for entry in entries:
                    line = f"- {entry.name} ({entry.entry_type})"
                    if entry.description:
                        line += f": {entry.description}"
                    lines.append(line)
                return ToolOutcome("\n".join(lines))

            case FinishRetrieval():
                raise ValueError("finish_retrieval is handled by the loop, not dispatched")

            case _:
                raise TypeError(f"Unsupported tool call: {call!r}")


def parse_tool_call(raw: object) -> ToolCall:
    if not isinstance(raw, dict):
        raise MalformedOutput(f"Tool call must be an object, got {raw!r}")
    name = str(raw.get("name") or raw.get("tool") or "").strip()
    args = raw.get("arguments") or raw.get("args") or {}
    if not isinstance(args, dict):
        raise MalformedOutput(f"Arguments for {name!r} must be an object")

    match name:
        case "list_chapters":
            return ListChapters()
        case "query_chapter":
            return QueryChapter(chapter=_int_arg(args, "chapter"), question=_str_arg(args, "question"))
        case "query_chapter_range":
            return QueryChapterRange(
                start=_int_arg(args, "start"),
                end=_int_arg(args, "end"),
                question=_str_arg(args, "question"),
            )
        case "list_entries":
            return ListEntries()
        case "finish_retrieval":
            return FinishRetrieval(summary=str(args.get("summary", "")).strip())
        case _:
            raise MalformedOutput(f"Unknown tool {name!r}")


def _tool_name(call: ToolCall) -> str:
    match call:
        case ListChapters():
            return "list_chapters"
        case QueryChapter(chapter=number):
            return f"query_chapter {number}"
        case QueryChapterRange(start=start, end=end):
            return f"query_chapter_range {start}-{end}"
        case ListEntries():
            return "list_entries"
        case FinishRetrieval():
            return "finish_retrieval"
        case _:
            raise TypeError(f"Unsupported tool call: {call!r}")


async def _skipped(limit: int) -> ToolOutcome:
    return ToolOutcome(
        f"Skipped: the budget of {limit} chapter queries for this turn is used up. "
        "Finish with what you have."
    )


def _answered(result: QueryResult) -> ToolOutcome:
    if is_not_found_answer(result.answer):
        return ToolOutcome(result.answer)
    return ToolOutcome(result.answer, result=result)


def _int_arg(args: dict[str, Any], key: str) -> int:
    try:
        return int(args[key])
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedOutput(f"Tool argument {key!r} must be an integer") from exc


def _str_arg(args: dict[str, Any], key: str) -> str:
    value = str(args.get(key, "")).strip()
    if not value:
        raise MalformedOutput(f"Tool argument {key!r} is required")
    return value


def _initial_prompt(user_input: str, chapter_count: int, query_budget: int) -> str:
    return (
        f"PLAYER INPUT:\n{user_input}\n\n"
        f"The story has {chapter_count} completed chapters. "
        f"You may run at most {query_budget} chapter queries in total. "
        "Gather whatever past context the narrator needs for this input."
    )
