from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple

import openai
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from config import AnswerConfig
from stt_core import CredentialContext, ErrorKind, PipelineError

__all__ = [
    "AnswerEngine",
    "ExtractionRequest",
    "QAItem",
    "SYSTEM_PROMPT",
    "build_messages",
    "coerce_items",
    "decode_structured_response",
    "extract_response_text",
    "parse_answers",
    "truncate_knowledge",
]

ANSWER_LOG = logging.getLogger("answers")

SYSTEM_PROMPT = (
    "You are an assistant that extracts interview prompts from a transcript and answers them accurately. "
    "Prompts may be phrased as questions or statements (for example, 'Tell me about your experience'). "
    "Use any provided knowledge base when answering and note when the knowledge base was used. "
    "If the knowledge base does not contain the requested information, provide a concise answer from your own "
    "knowledge and mention that the answer came from general knowledge. "
    'Respond strictly as JSON with the shape {"answers":[{"question":string,"answer":string,'
    '"source":"knowledge_base"|"general"}]}. '
    'If there are no prompts that require answers, respond with {"answers":[]}.'
)

TASK_INSTRUCTIONS = (
    "Instructions: Identify each distinct question or request for information in the transcript and answer it "
    "concisely in one or two sentences. Use the knowledge base when relevant and mark those answers with source "
    '"knowledge_base". If the knowledge base lacks the information, answer from your general understanding and '
    'mark the source as "general".'
)


# ---------------------------------------------------------------------------
# Request / item models


def truncate_knowledge(text: Optional[str], max_chars: int) -> str:
    cleaned = (text or "").strip()
    if max_chars <= 0:
        return ""
    return cleaned[:max_chars]


class ExtractionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    transcript: str
    knowledge_excerpt: str = ""

    @classmethod
    def create(cls, transcript: str, knowledge: Optional[str], max_chars: int) -> "ExtractionRequest":
        return cls(
            transcript=(transcript or "").strip(),
            knowledge_excerpt=truncate_knowledge(knowledge, max_chars),
        )


class QAItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    question: str
    answer: str
    source: Literal["knowledge_base", "general"] = "general"

    @field_validator("question", "answer", mode="before")
    @classmethod
    def _non_empty_text(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("must be a string")
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("source", mode="before")
    @classmethod
    def _known_source(cls, value: Any) -> str:
        return "knowledge_base" if value == "knowledge_base" else "general"


def build_messages(request: ExtractionRequest) -> List[Dict[str, str]]:
    sections: List[str] = []
    if request.knowledge_excerpt:
        sections.append(f"Knowledge Base:\n{request.knowledge_excerpt}")
    sections.append(f"Transcript:\n{request.transcript}")
    sections.append(TASK_INSTRUCTIONS)
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "\n\n".join(sections)},
    ]


# ---------------------------------------------------------------------------
# Resilient decoding
#
# Each strategy narrows the raw reply to a candidate JSON text, or returns None
# when it does not apply. The first candidate that decodes wins.

_FENCED_BLOCK = re.compile(r"```[\w+-]*[ \t]*\n?(.*?)```", re.DOTALL)
_LEADING_FENCE = re.compile(r"^```[\w+-]*\s*")
_TRAILING_FENCE = re.compile(r"\s*```$")
_BRACED_SPAN = re.compile(r"\{.*\}", re.DOTALL)


def _direct_candidate(raw: str) -> Optional[str]:
    return raw.strip() or None


def _fenced_candidate(raw: str) -> Optional[str]:
    match = _FENCED_BLOCK.search(raw)
    if match:
        return match.group(1).strip() or None
    stripped = _TRAILING_FENCE.sub("", _LEADING_FENCE.sub("", raw.strip()))
    return stripped.strip() or None


def _braced_candidate(raw: str) -> Optional[str]:
    match = _BRACED_SPAN.search(raw)
    return match.group(0).strip() if match else None


DECODE_STRATEGIES: Tuple[Tuple[str, Callable[[str], Optional[str]]], ...] = (
    ("direct", _direct_candidate),
    ("fenced", _fenced_candidate),
    ("braced", _braced_candidate),
)


def _try_json(candidate: str) -> Tuple[bool, Any]:
    try:
        return True, json.loads(candidate)
    except (ValueError, RecursionError):
        return False, None


def decode_structured_response(raw: str) -> Tuple[str, Any]:
    """Return (strategy name, decoded value) for the first strategy that decodes."""
    for name, narrow in DECODE_STRATEGIES:
        candidate = narrow(raw)
        if candidate is None:
            continue
        ok, value = _try_json(candidate)
        if ok:
            return name, value
    raise PipelineError(ErrorKind.UNPARSEABLE_RESPONSE, "Failed to parse AI response.")


def coerce_items(parsed: Any) -> List[QAItem]:
    """Validate decoded items one by one; invalid entries are dropped, order is kept."""
    if isinstance(parsed, dict):
        raw_items = parsed.get("answers")
    elif isinstance(parsed, list):
        raw_items = parsed
    else:
        raw_items = None
    if not isinstance(raw_items, list):
        return []

    items: List[QAItem] = []
    for index, candidate in enumerate(raw_items):
        if not isinstance(candidate, dict):
            ANSWER_LOG.debug("dropping answer #%d: not an object", index)
            continue
        try:
            items.append(QAItem.model_validate(candidate))
        except ValidationError as exc:
            ANSWER_LOG.debug("dropping answer #%d: %d validation error(s)", index, exc.error_count())
    return items


def parse_answers(raw_text: str) -> List[QAItem]:
    text = (raw_text or "").strip()
    if not text:
        return []
    strategy, parsed = decode_structured_response(text)
    ANSWER_LOG.debug("model reply decoded via %s strategy", strategy)
    return coerce_items(parsed)


def extract_response_text(response) -> str:
    """Pull the text out of a Responses API result."""
    if response is None:
        return ""
    text = getattr(response, "output_text", None)
    if callable(text):
        text = text()
    if isinstance(text, str):
        return text.strip()

    parts: List[str] = []
    for item in getattr(response, "output", None) or []:
        for content in getattr(item, "content", None) or []:
            value = getattr(content, "text", None)
            if isinstance(value, str):
                parts.append(value)
    return "".join(parts).strip()


# ---------------------------------------------------------------------------
# Engine


class AnswerEngine:
    """Extracts interview prompts from a transcript and answers them with one model call."""

    def __init__(self, credentials: CredentialContext, config: Optional[AnswerConfig] = None):
        self.credentials = credentials
        self.cfg = config or AnswerConfig.from_env()

    def extract(self, transcript: str, knowledge_excerpt: str = "") -> List[QAItem]:
        request = ExtractionRequest.create(transcript, knowledge_excerpt, self.cfg.knowledge_max_chars)
        if not request.transcript:
            return []

        raw = self._generate(build_messages(request))
        if not raw:
            ANSWER_LOG.info("model returned an empty reply")
            return []

        items = parse_answers(raw)
        ANSWER_LOG.info("extracted %d answer(s)", len(items))
        return items

    def _generate(self, messages: List[Dict[str, str]]) -> str:
        client = self.credentials.openai_client()
        ANSWER_LOG.info("requesting answers model=%s", self.cfg.model)
        try:
            response = client.responses.create(
                model=self.cfg.model,
                input=messages,
                timeout=self.cfg.timeout_s,
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise PipelineError(ErrorKind.UNAUTHORIZED, f"OpenAI rejected the API key: {exc}") from exc
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as exc:
            raise PipelineError(ErrorKind.TRANSIENT, f"OpenAI completion failed: {exc}") from exc
        except openai.APIError as exc:
            raise PipelineError(ErrorKind.UNKNOWN, f"OpenAI completion failed: {exc}") from exc
        return extract_response_text(response)
