from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
import os

from dotenv import load_dotenv

PLANNER_MODES = ("static", "agentic", "auto")


@dataclass(frozen=True)
class RetrievalConfig:
    chapter_threshold: int = 50
    buffer_turns: int = 10
    max_queries_per_turn: int = 5
    max_chapters_per_range: int = 10
    planner_mode: str = "static"
    max_agent_iterations: int = 6
    agentic_threshold: int = 15
    range_token_budget: int = 24_000

    def __post_init__(self) -> None:
        if self.planner_mode not in PLANNER_MODES:
            raise ValueError(f"Unknown planner mode: {self.planner_mode!r}")
        if self.chapter_threshold < 1:
            raise ValueError("chapter_threshold must be at least 1")
        if self.buffer_turns < 0:
            raise ValueError("buffer_turns must not be negative")

    @property
    def trigger_turns(self) -> int:
        return self.chapter_threshold + self.buffer_turns


@dataclass(frozen=True)
class Settings:
    project_root: Path
    data_dir: Path
    memory_dir: Path
    sqlite_path: Path
    openrouter_api_key: str
    openrouter_base_url: str
    model_name: str
    fast_model_name: str
    model_temperature: float
    request_timeout_seconds: float
    retry_attempts: int
    retry_base_delay: float
    chapter_threshold: int
    buffer_turns: int
    max_queries_per_turn: int
    max_chapters_per_range: int
    planner_mode: str
    max_agent_iterations: int
    agentic_threshold: int
    range_token_budget: int


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    project_root = Path(__file__).resolve().parents[1]
    load_dotenv(project_root / ".env")

    data_dir = project_root / "data"
    memory_dir = data_dir / "memory"
    model_name = _env_str("OPENROUTER_MODEL", "anthropic/claude-sonnet-4")

    settings = Settings(
        project_root=project_root,
        data_dir=data_dir,
        memory_dir=memory_dir,
        sqlite_path=memory_dir / "story.db",
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY", "").strip(),
        openrouter_base_url=_env_str("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"),
        model_name=model_name,
        fast_model_name=_env_str("OPENROUTER_FAST_MODEL", model_name),
        model_temperature=_env_float("MODEL_TEMPERATURE", 0.3),
        request_timeout_seconds=_env_float("MODEL_TIMEOUT_SECONDS", 90.0),
        retry_attempts=max(1, _env_int("MODEL_RETRY_ATTEMPTS", 5)),
        retry_base_delay=max(0.0, _env_float("MODEL_RETRY_BASE_DELAY", 0.5)),
        chapter_threshold=_env_int("CHAPTER_THRESHOLD", 50),
        buffer_turns=_env_int("CHAPTER_BUFFER_TURNS", 10),
        max_queries_per_turn=_env_int("MAX_QUERIES_PER_TURN", 5),
        max_chapters_per_range=_env_int("MAX_CHAPTERS_PER_RANGE", 10),
        planner_mode=_env_str("PLANNER_MODE", "static").lower(),
        max_agent_iterations=_env_int("MAX_AGENT_ITERATIONS", 6),
        agentic_threshold=_env_int("AGENTIC_THRESHOLD", 15),
        range_token_budget=_env_int("RANGE_TOKEN_BUDGET", 24_000),
    )
    ensure_directories(settings)
    return settings


def retrieval_config_from_settings(settings: Settings) -> RetrievalConfig:
    return RetrievalConfig(
        chapter_threshold=settings.chapter_threshold,
        buffer_turns=settings.buffer_turns,
        max_queries_per_turn=settings.max_queries_per_turn,
        max_chapters_per_range=settings.max_chapters_per_range,
        planner_mode=settings.planner_mode,
        max_agent_iterations=settings.max_agent_iterations,
        agentic_threshold=settings.agentic_threshold,
        range_token_budget=settings.range_token_budget,
    )


def ensure_directories(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.memory_dir.mkdir(parents=True, exist_ok=True)
