from __future__ import annotations

import logging
from typing import Protocol

from memory.errors import InvalidRange, NotFound, OutOfSequence
from memory.models import Chapter, ChapterPreview

logger = logging.getLogger(__name__)


class ChapterStore(Protocol):
    def save_chapter(self, chapter: Chapter) -> None: ...

    def load_chapters(self) -> list[Chapter]: ...


class ChapterIndex:
    """Committed chapters, numbered 1..count with contiguous turn ranges.

    ``append`` is the only mutator. It validates the new chapter, persists it
    and only then publishes it, so readers never see a half-committed chapter.
    The backing tuple is replaced rather than mutated, which keeps any
    snapshot a reader already holds stable.
    """

    def __init__(self, store: ChapterStore | None = None) -> None:
        self._store = store
        self._chapters: tuple[Chapter, ...] = ()

    @classmethod
    def load(cls, store: ChapterStore) -> ChapterIndex:
        index = cls()
        for chapter in store.load_chapters():
            index.append(chapter)
        index._store = store
        logger.info("Loaded %d chapters from storage", index.count)
        return index

    @property
    def count(self) -> int:
        return len(self._chapters)

    @property
    def next_start_position(self) -> int:
        if not self._chapters:
            return 1
        return self._chapters[-1].end_position + 1

    def last(self) -> Chapter | None:
        return self._chapters[-1] if self._chapters else None

    def previews(self) -> list[ChapterPreview]:
        return [chapter.preview() for chapter in self._chapters]

    def all(self) -> list[Chapter]:
        return list(self._chapters)

    def get(self, number: int) -> Chapter:
        if not 1 <= number <= len(self._chapters):
            raise NotFound(f"Chapter {number} does not exist (have {len(self._chapters)})")
        return self._chapters[number - 1]

    def get_range(self, start: int, end: int) -> list[Chapter]:
        if not 1 <= start <= end <= len(self._chapters):
            raise InvalidRange(
                f"Invalid chapter range {start}-{end} (have {len(self._chapters)})"
            )
        return list(self._chapters[start - 1 : end])

    def append(self, chapter: Chapter) -> None:
        expected_number = len(self._chapters) + 1
        if chapter.number != expected_number:
            raise OutOfSequence(f"Expected chapter {expected_number}, got {chapter.number}")
        if chapter.start_position != self.next_start_position:
            raise OutOfSequence(
                f"Chapter {chapter.number} starts at turn {chapter.start_position}, "
                f"expected {self.next_start_position}"
            )
        if chapter.end_position < chapter.start_position:
            raise OutOfSequence(f"Chapter {chapter.number} ends before it starts")
        if chapter.turn_count != chapter.end_position - chapter.start_position + 1:
            raise OutOfSequence(f"Chapter {chapter.number} turn count does not match its range")

        if self._store is not None:
            self._store.save_chapter(chapter)
        self._chapters = (*self._chapters, chapter)
