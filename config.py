from __future__ import annotations
import os

# === Simple knobs (edit these numbers if you dislike envs) ===
STT_MODEL = os.environ.get("STT_MODEL", "gpt-4o-mini-transcribe")
STT_LANGUAGE = os.environ.get("STT_LANGUAGE", "en")
LLM_OPENAI_MODEL = os.environ.get("LLM_OPENAI_MODEL", "gpt-4o-mini")

# Live capture + queue shaping (milliseconds / seconds)
LIVE = {
    "CHUNK_MS": int(os.environ.get("STT_LIVE_CHUNK_MS", "3000")),
    "RETRY_DELAY_MS": int(os.environ.get("STT_LIVE_RETRY_DELAY_MS", "300")),
    "MAX_RECORDING_S": float(os.environ.get("STT_MAX_RECORDING_S", "180")),
}

# Answer extraction bounds
ANSWERS = {
    "KNOWLEDGE_MAX_CHARS": int(os.environ.get("ANSWER_KNOWLEDGE_MAX_CHARS", "25000")),
    "HISTORY_LIMIT": int(os.environ.get("STT_HISTORY_LIMIT", "100")),
}

# Write env once so downstream .from_env() picks them up predictably.
os.environ.setdefault("STT_MODEL", STT_MODEL)
os.environ.setdefault("STT_LANGUAGE", STT_LANGUAGE)
os.environ.setdefault("LLM_OPENAI_MODEL", LLM_OPENAI_MODEL)

os.environ.setdefault("STT_LIVE_CHUNK_MS", str(LIVE["CHUNK_MS"]))
os.environ.setdefault("STT_LIVE_RETRY_DELAY_MS", str(LIVE["RETRY_DELAY_MS"]))
os.environ.setdefault("STT_MAX_RECORDING_S", str(LIVE["MAX_RECORDING_S"]))
os.environ.setdefault("ANSWER_KNOWLEDGE_MAX_CHARS", str(ANSWERS["KNOWLEDGE_MAX_CHARS"]))
os.environ.setdefault("STT_HISTORY_LIMIT", str(ANSWERS["HISTORY_LIMIT"]))

# Re-export existing dataclasses and helper so rest of code imports from `config`.
from stt_parameters import (  # noqa: E402
    AnswerConfig,
    CaptureConfig,
    HTTPSTTConfig,
    PipelineConfig,
    QueueConfig,
    RealtimeConfig,
    load_pipeline_config,
)
