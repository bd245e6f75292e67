from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
import hashlib
import json
from pathlib import Path
import sqlite3
from typing import Any, Iterator, Sequence

from memory.models import Chapter, ChapterMetadata, Turn

TURN_ROLES = ("user", "assistant")


class SQLiteStore:
    """Transcript store plus the chapter save/load contract."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.execute("PRAGMA busy_timeout=30000;")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _initialize(self) -> None:
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS turns (
                    id TEXT PRIMARY KEY,
                    position INTEGER NOT NULL UNIQUE,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    chapter_number INTEGER,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                CREATE INDEX IF NOT EXISTS idx_turns_chapter ON turns(chapter_number);

                CREATE TABLE IF NOT EXISTS chapters (
                    number INTEGER PRIMARY KEY,
                    id TEXT NOT NULL UNIQUE,
                    title TEXT,
                    start_turn_id TEXT NOT NULL,
                    end_turn_id TEXT NOT NULL,
                    start_position INTEGER NOT NULL,
                    end_position INTEGER NOT NULL,
                    turn_count INTEGER NOT NULL,
                    summary TEXT NOT NULL,
                    source_text TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS retrieval_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_input TEXT NOT NULL,
                    strategy TEXT NOT NULL,
                    targets TEXT NOT NULL DEFAULT '[]',
                    complete INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            conn.commit()

    def append_turn(self, role: str, content: str, turn_id: str | None = None) -> Turn:
        if role not in TURN_ROLES:
            raise ValueError(f"Unknown turn role: {role!r}")
        with self.connect() as conn:
            row = conn.execute("SELECT COALESCE(MAX(position), 0) AS last FROM turns").fetchone()
            position = int(row["last"]) + 1
            tid = turn_id or _turn_id(position, role, content)
            conn.execute(
                "INSERT INTO turns(id, position, role, content) VALUES (?, ?, ?, ?)",
                (tid, position, role, content),
            )
            conn.commit()
        return Turn(turn_id=tid, role=role, content=content, position=position)

    def list_turns(self, after_position: int = 0) -> list[Turn]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT id, position, role, content, chapter_number FROM turns "
                "WHERE position > ? ORDER BY position ASC",
                (after_position,),
            ).fetchall()
        return [_row_to_turn(row) for row in rows]

    def count_turns(self) -> int:
        with self.connect() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM turns").fetchone()[0])

    def save_chapter(self, chapter: Chapter) -> None:
        metadata = {
            "keywords": chapter.metadata.keywords,
            "characters": chapter.metadata.characters,
            "locations": chapter.metadata.locations,
            "plot_threads": chapter.metadata.plot_threads,
            "emotional_tone": chapter.metadata.emotional_tone,
        }
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO chapters(
                    number, id, title, start_turn_id, end_turn_id, start_position, end_position,
                    turn_count, summary, source_text, metadata, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chapter.number,
                    chapter.chapter_id,
                    chapter.title,
                    chapter.start_turn_id,
                    chapter.end_turn_id,
                    chapter.start_position,
                    chapter.end_position,
                    chapter.turn_count,
                    chapter.summary,
                    chapter.source_text,
                    json.dumps(metadata, ensure_ascii=False),
                    chapter.created_at.isoformat(),
                ),
            )
            conn.execute(
                "UPDATE turns SET chapter_number = ? WHERE position BETWEEN ? AND ?",
                (chapter.number, chapter.start_position, chapter.end_position),
            )
            conn.commit()

    def load_chapter(self, number: int) -> Chapter | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM chapters WHERE number = ?", (number,)).fetchone()
        return _row_to_chapter(row) if row else None

    def load_chapters(self) -> list[Chapter]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM chapters ORDER BY number ASC").fetchall()
        return [_row_to_chapter(row) for row in rows]

    def log_retrieval(
        self,
        user_input: str,
        *,
        strategy: str,
        targets: Sequence[str],
        complete: bool = True,
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO retrieval_logs(user_input, strategy, targets, complete) VALUES (?, ?, ?, ?)",
                (user_input, strategy, json.dumps(list(targets)), int(complete)),
            )
            conn.commit()

    def recent_retrievals(self, limit: int = 20) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT user_input, strategy, targets, complete, created_at FROM retrieval_logs "
                "ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        result = []
        for row in rows:
            item = dict(row)
            item["targets"] = json.loads(item["targets"] or "[]")
            item["complete"] = bool(item["complete"])
            result.append(item)
        return result


def _turn_id(position: int, role: str, content: str) -> str:
    raw = f"turn|{position}|{role}|{content}".encode("utf-8")
    return hashlib.sha1(raw).hexdigest()[:16]


def _row_to_turn(row: sqlite3.Row) -> Turn:
    chapter_number = row["chapter_number"]
    return Turn(
        turn_id=str(row["id"]),
        role=str(row["role"]),
        content=str(row["content"]),
        position=int(row["position"]),
        chapter_number=int(chapter_number) if chapter_number is not None else None,
    )


def _row_to_chapter(row: sqlite3.Row) -> Chapter:
    metadata = json.loads(row["metadata"] or "{}")
    return Chapter(
        chapter_id=str(row["id"]),
        number=int(row["number"]),
        title=row["title"],
        start_turn_id=str(row["start_turn_id"]),
        end_turn_id=str(row["end_turn_id"]),
        start_position=int(row["start_position"]),
        end_position=int(row["end_position"]),
        turn_count=int(row["turn_count"]),
        summary=str(row["summary"]),
        source_text=str(row["source_text"]),
        created_at=datetime.fromisoformat(str(row["created_at"])),
        metadata=ChapterMetadata(
            keywords=list(metadata.get("keywords", [])),
            characters=list(metadata.get("characters", [])),
            locations=list(metadata.get("locations", [])),
            plot_threads=list(metadata.get("plot_threads", [])),
            emotional_tone=str(metadata.get("emotional_tone", "")),
        ),
    )
