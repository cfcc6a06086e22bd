from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

__all__ = [
    "HTTPSTTConfig",
    "QueueConfig",
    "RealtimeConfig",
    "AnswerConfig",
    "CaptureConfig",
    "PipelineConfig",
    "load_pipeline_config",
]


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() not in {"0", "false", "no", "off"}


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    val = os.environ.get(name)
    if val is None or not val.strip():
        return default
    return val.strip()


DEFAULT_MODEL = "gpt-4o-mini-transcribe"
DEFAULT_ENDPOINT = "https://api.openai.com/v1/audio/transcriptions"
DEFAULT_LANGUAGE = "en"

DEFAULT_REALTIME_HOST = "api.openai.com"
DEFAULT_REALTIME_INSTRUCTIONS = (
    "Provide a running transcription of the audio input. Return only the transcript text."
)

DEFAULT_ANSWER_MODEL = "gpt-4o-mini"
KNOWLEDGE_MAX_CHARS = 25_000


@dataclass
class HTTPSTTConfig:
    """HTTP transcription parameters."""

    model: str = DEFAULT_MODEL
    language: str = DEFAULT_LANGUAGE
    endpoint: str = DEFAULT_ENDPOINT
    timeout_s: float = 60.0
    prompt: Optional[str] = field(default_factory=lambda: os.environ.get("STT_PROMPT"))

    @classmethod
    def from_env(cls) -> "HTTPSTTConfig":
        d = cls()
        return cls(
            model=os.environ.get("STT_MODEL", d.model),
            language=os.environ.get("STT_LANGUAGE", d.language),
            endpoint=os.environ.get("STT_ENDPOINT", d.endpoint),
            timeout_s=_env_float("STT_TIMEOUT_S", d.timeout_s),
            prompt=os.environ.get("STT_PROMPT", d.prompt),
        )


@dataclass
class QueueConfig:
    """Live (partial) transcription queue shaping."""

    # Pause before the next attempt after a transient failure
    retry_delay_ms: int = 300

    # Off: each partial result replaces the running text (chunks carry all audio so far)
    accumulate: bool = False

    @property
    def retry_delay_s(self) -> float:
        return max(0, self.retry_delay_ms) / 1000.0

    @classmethod
    def from_env(cls) -> "QueueConfig":
        d = cls()
        return cls(
            retry_delay_ms=_env_int("STT_LIVE_RETRY_DELAY_MS", d.retry_delay_ms),
            accumulate=_env_bool("STT_LIVE_ACCUMULATE", d.accumulate),
        )


@dataclass
class RealtimeConfig:
    """Realtime websocket session parameters."""

    host: str = DEFAULT_REALTIME_HOST
    model: str = DEFAULT_MODEL
    beta_header: str = "realtime=v1"
    open_timeout_s: float = 10.0
    instructions: str = DEFAULT_REALTIME_INSTRUCTIONS

    @classmethod
    def from_env(cls) -> "RealtimeConfig":
        d = cls()
        return cls(
            host=os.environ.get("STT_REALTIME_HOST", d.host),
            model=os.environ.get("STT_REALTIME_MODEL", d.model),
            beta_header=os.environ.get("STT_REALTIME_BETA", d.beta_header),
            open_timeout_s=_env_float("STT_REALTIME_OPEN_TIMEOUT_S", d.open_timeout_s),
            instructions=os.environ.get("STT_REALTIME_INSTRUCTIONS", d.instructions),
        )


@dataclass
class AnswerConfig:
    """Question/answer extraction parameters."""

    model: str = DEFAULT_ANSWER_MODEL
    base_url: Optional[str] = None
    timeout_s: float = 120.0
    knowledge_max_chars: int = KNOWLEDGE_MAX_CHARS
    only_questions: bool = False

    @classmethod
    def from_env(cls) -> "AnswerConfig":
        d = cls()
        return cls(
            model=os.environ.get("LLM_OPENAI_MODEL", d.model),
            base_url=_env_str("OPENAI_BASE_URL", d.base_url),
            timeout_s=_env_float("OPENAI_TIMEOUT_S", d.timeout_s),
            knowledge_max_chars=max(0, _env_int("ANSWER_KNOWLEDGE_MAX_CHARS", d.knowledge_max_chars)),
            only_questions=_env_bool("ANSWER_ONLY_QUESTIONS", d.only_questions),
        )


@dataclass
class CaptureConfig:
    """Microphone capture shaping for the command line."""

    chunk_ms: int = 3000
    max_recording_s: float = 180.0

    @classmethod
    def from_env(cls) -> "CaptureConfig":
        d = cls()
        return cls(
            chunk_ms=max(100, _env_int("STT_LIVE_CHUNK_MS", d.chunk_ms)),
            max_recording_s=_env_float("STT_MAX_RECORDING_S", d.max_recording_s),
        )


@dataclass
class PipelineConfig:
    stt: HTTPSTTConfig = field(default_factory=HTTPSTTConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    answers: AnswerConfig = field(default_factory=AnswerConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    history_limit: int = 100

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        d = cls()
        return cls(
            stt=HTTPSTTConfig.from_env(),
            queue=QueueConfig.from_env(),
            realtime=RealtimeConfig.from_env(),
            answers=AnswerConfig.from_env(),
            capture=CaptureConfig.from_env(),
            history_limit=max(1, _env_int("STT_HISTORY_LIMIT", d.history_limit)),
        )


def load_pipeline_config() -> PipelineConfig:
    return PipelineConfig.from_env()
