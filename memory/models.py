from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class Turn:
    turn_id: str
    role: str
    content: str
    position: int
    chapter_number: int | None = None


@dataclass(slots=True, frozen=True)
class ChapterMetadata:
    keywords: list[str] = field(default_factory=list)
    characters: list[str] = field(default_factory=list)
    locations: list[str] = field(default_factory=list)
    plot_threads: list[str] = field(default_factory=list)
    emotional_tone: str = ""


@dataclass(slots=True, frozen=True)
class ChapterPreview:
    number: int
    title: str | None
    summary: str
    start_turn_id: str
    end_turn_id: str
    characters: list[str]
    locations: list[str]


@dataclass(slots=True, frozen=True)
class Chapter:
    chapter_id: str
    number: int
    start_turn_id: str
    end_turn_id: str
    start_position: int
    end_position: int
    turn_count: int
    summary: str
    source_text: str
    created_at: datetime
    metadata: ChapterMetadata
    title: str | None = None

    def preview(self) -> ChapterPreview:
        return ChapterPreview(
            number=self.number,
            title=self.title,
            summary=self.summary,
            start_turn_id=self.start_turn_id,
            end_turn_id=self.end_turn_id,
            characters=list(self.metadata.characters),
            locations=list(self.metadata.locations),
        )


@dataclass(slots=True, frozen=True)
class EndpointSelection:
    endpoint_turn_id: str
    rationale: str
    suggested_title: str | None = None
    fallback: bool = False


@dataclass(slots=True, frozen=True)
class ChapterQuery:
    chapter_number: int
    question: str


@dataclass(slots=True)
class RetrievalDecision:
    queries: list[ChapterQuery] = field(default_factory=list)


@dataclass(slots=True)
class QueryResult:
    question: str
    answer: str
    chapter_number: int | None = None
    chapter_range: tuple[int, int] | None = None
    truncated_chapters: list[int] = field(default_factory=list)

    @property
    def target(self) -> str:
        if self.chapter_range is not None:
            return f"{self.chapter_range[0]}-{self.chapter_range[1]}"
        return str(self.chapter_number)


@dataclass(slots=True)
class RetrievedContext:
    results: list[QueryResult]
    strategy: str
    created_at: datetime = field(default_factory=utc_now)
    summary: str | None = None
    complete: bool = True
    iterations: int = 0

    def triples(self) -> list[tuple[str, str, str]]:
        return [(result.target, result.question, result.answer) for result in self.results]


@dataclass(slots=True, frozen=True)
class ClassificationSignal:
    chapter_boundary_due: bool
    suggested_title: str | None = None


@dataclass(slots=True, frozen=True)
class Entry:
    entry_id: str
    name: str
    entry_type: str
    description: str = ""
