from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Tuple

import httpx
from openai import OpenAI

from config import HTTPSTTConfig, QueueConfig


# ---------------------------------------------------------------------------
# Errors and data model


class ErrorKind(str, Enum):
    INVALID_PAYLOAD = "InvalidPayload"
    UNAUTHORIZED = "Unauthorized"
    TRANSIENT = "Transient"
    UNKNOWN = "Unknown"
    NOT_READY = "NotReady"
    UNPARSEABLE_RESPONSE = "UnparseableResponse"


class PipelineError(RuntimeError):
    """Failure carrying a structured ErrorKind so callers never match on message text."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True)
class AudioChunk:
    """Encoded audio handed over by the capture side, tagged with its arrival order."""

    data: bytes
    mime_type: str = "audio/webm"
    sequence: int = 0


@dataclass(frozen=True)
class TranscriptionResult:
    ok: bool
    text: str = ""
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, text: str) -> "TranscriptionResult":
        return cls(ok=True, text=(text or "").strip())

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "TranscriptionResult":
        return cls(ok=False, error_kind=kind, error=message)


# ---------------------------------------------------------------------------
# Credentials

HTTP_LOG = logging.getLogger("http_stt")
QUEUE_LOG = logging.getLogger("stt_queue")

MISSING_KEY_MESSAGE = "OpenAI API key not configured. Add it via OPENAI_API_KEY or the CLI."


def _default_key_file() -> Path:
    # Prefer openai_api_key.txt alongside the modules, fall back to the parent dir.
    script_dir = Path(__file__).resolve().parent
    candidates = [
        script_dir / "openai_api_key.txt",
        script_dir.parent / "openai_api_key.txt",
    ]
    for path in candidates:
        if path.exists():
            return path
    return candidates[0]


def load_openai_api_key() -> Optional[str]:
    """Load the OpenAI API key from env or a local text file."""
    key = os.environ.get("OPENAI_API_KEY")
    if key:
        key = key.strip()
        if key:
            return key

    key_file = os.environ.get("OPENAI_API_KEY_FILE")
    path = Path(key_file).expanduser() if key_file else _default_key_file()
    if not path.exists():
        return None

    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return text or None


def _default_http_client(api_key: str) -> httpx.Client:
    headers = {"Authorization": f"Bearer {api_key}"}
    return httpx.Client(timeout=httpx.Timeout(connect=10.0, read=None, write=None, pool=None), headers=headers)


def _default_openai_client(api_key: str, base_url: Optional[str]) -> OpenAI:
    return OpenAI(api_key=api_key, base_url=base_url)


class CredentialContext:
    """Process-wide API key with lazily built service clients.

    Setting or clearing the key drops the cached clients so the next call is made
    with the new credential.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        http_factory: Optional[Callable[[str], httpx.Client]] = None,
        openai_factory: Optional[Callable[[str, Optional[str]], OpenAI]] = None,
    ):
        self._lock = threading.Lock()
        self._api_key = (api_key or "").strip()
        self._base_url = base_url
        self._http_factory = http_factory or _default_http_client
        self._openai_factory = openai_factory or _default_openai_client
        self._http_client: Optional[httpx.Client] = None
        self._openai_client: Optional[OpenAI] = None

    @classmethod
    def from_env(cls, **kwargs) -> "CredentialContext":
        return cls(load_openai_api_key(), **kwargs)

    @property
    def has_key(self) -> bool:
        with self._lock:
            return bool(self._api_key)

    @property
    def api_key(self) -> str:
        with self._lock:
            return self._api_key

    def set(self, api_key: Optional[str]) -> bool:
        """Replace the key; a blank value clears it. Returns whether a key is now set."""
        cleaned = (api_key or "").strip() if isinstance(api_key, str) else ""
        with self._lock:
            self._api_key = cleaned
            stale = (self._http_client, self._openai_client)
            self._http_client = None
            self._openai_client = None
        for client in stale:
            if client is not None:
                client.close()
        HTTP_LOG.info("API key %s", "updated" if cleaned else "cleared")
        return bool(cleaned)

    def clear(self) -> None:
        self.set("")

    def require_key(self) -> str:
        key = self.api_key
        if not key:
            raise PipelineError(ErrorKind.UNAUTHORIZED, MISSING_KEY_MESSAGE)
        return key

    def http_client(self) -> httpx.Client:
        with self._lock:
            if not self._api_key:
                raise PipelineError(ErrorKind.UNAUTHORIZED, MISSING_KEY_MESSAGE)
            if self._http_client is None:
                self._http_client = self._http_factory(self._api_key)
            return self._http_client

    def openai_client(self) -> OpenAI:
        with self._lock:
            if not self._api_key:
                raise PipelineError(ErrorKind.UNAUTHORIZED, MISSING_KEY_MESSAGE)
            if self._openai_client is None:
                self._openai_client = self._openai_factory(self._api_key, self._base_url)
            return self._openai_client


# ---------------------------------------------------------------------------
# HTTP transcriber

TRANSCRIPTION_MODES = ("partial", "final")

# MIME base type -> upload file extension
SUPPORTED_MIME_TYPES: Dict[str, str] = {
    "audio/webm": "webm",
    "video/webm": "webm",
    "audio/ogg": "ogg",
    "audio/wav": "wav",
    "audio/wave": "wav",
    "audio/x-wav": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mpga": "mpga",
    "audio/mp4": "mp4",
    "audio/m4a": "m4a",
    "audio/x-m4a": "m4a",
    "audio/flac": "flac",
    "audio/x-flac": "flac",
}

TRANSIENT_STATUS = {408, 409, 429}


def coerce_payload(buffer: object) -> bytes:
    if isinstance(buffer, bytes):
        data = buffer
    elif isinstance(buffer, (bytearray, memoryview)):
        data = bytes(buffer)
    else:
        raise PipelineError(ErrorKind.INVALID_PAYLOAD, "Unsupported audio payload format.")
    if not data:
        raise PipelineError(ErrorKind.INVALID_PAYLOAD, "Empty audio payload received.")
    return data


def resolve_mime_type(mime_type: Optional[str]) -> Tuple[str, str]:
    """Return (mime, extension); codec parameters such as ';codecs=opus' are kept on the mime."""
    mime = (mime_type or "").strip() or "audio/webm"
    base = mime.split(";", 1)[0].strip().lower()
    ext = SUPPORTED_MIME_TYPES.get(base)
    if ext is None:
        raise PipelineError(ErrorKind.INVALID_PAYLOAD, f"Unsupported audio type: {mime}")
    return mime, ext


def classify_status(status_code: int) -> ErrorKind:
    if status_code in (401, 403):
        return ErrorKind.UNAUTHORIZED
    if status_code in TRANSIENT_STATUS or status_code >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN


class HTTPTranscriber:
    """Posts one encoded audio buffer to the transcription endpoint and returns plain text."""

    def __init__(self, credentials: CredentialContext, config: Optional[HTTPSTTConfig] = None, label: str = "MIC"):
        self.credentials = credentials
        self.cfg = config or HTTPSTTConfig.from_env()
        self.label = label

    def transcribe(self, buffer: object, mime_type: Optional[str] = "audio/webm", mode: str = "final") -> TranscriptionResult:
        if mode not in TRANSCRIPTION_MODES:
            raise ValueError(f"unknown transcription mode: {mode!r}")

        try:
            payload = coerce_payload(buffer)
            mime, ext = resolve_mime_type(mime_type)
            client = self.credentials.http_client()
        except PipelineError as exc:
            HTTP_LOG.warning("%s %s transcription refused: %s", self.label, mode, exc)
            return TranscriptionResult.failure(exc.kind, str(exc))

        data = {
            "model": self.cfg.model,
            "language": self.cfg.language,
            "response_format": "text",
        }
        if self.cfg.prompt:
            data["prompt"] = self.cfg.prompt
        files = {"file": (f"recording.{ext}", payload, mime)}

        report = HTTP_LOG.error if mode == "final" else HTTP_LOG.warning
        HTTP_LOG.info("%s POST %s mode=%s model=%s bytes=%d", self.label, self.cfg.endpoint, mode, self.cfg.model, len(payload))
        try:
            response = client.post(self.cfg.endpoint, data=data, files=files, timeout=self.cfg.timeout_s)
        except httpx.TransportError as exc:
            report("%s upload failed: %s", self.label, exc)
            return TranscriptionResult.failure(ErrorKind.TRANSIENT, f"Transcription request failed: {exc}")
        except httpx.HTTPError as exc:
            report("%s upload failed: %s", self.label, exc)
            return TranscriptionResult.failure(ErrorKind.UNKNOWN, f"Transcription request failed: {exc}")

        if not response.is_success:
            kind = classify_status(response.status_code)
            message = self._error_message(response)
            report("%s transcription error %s (%s): %s", self.label, response.status_code, kind.value, message)
            return TranscriptionResult.failure(kind, message)

        return TranscriptionResult.success(self._response_text(response))

    # ---- helpers -----------------------------------------------------

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                return error["message"]
            if isinstance(error, str) and error.strip():
                return error.strip()
        text = response.text.strip()
        return text[:200] if text else f"Transcription failed with HTTP {response.status_code}."

    @classmethod
    def _response_text(cls, response: httpx.Response) -> str:
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                payload = response.json()
            except ValueError:
                return response.text.strip()
            if isinstance(payload, dict):
                return cls._extract_json_text(payload)
            return str(payload or "").strip()
        return response.text.strip()

    @staticmethod
    def _extract_json_text(payload: Dict[str, object]) -> str:
        direct = payload.get("text")
        if isinstance(direct, str) and direct.strip():
            return direct.strip()

        transcript = payload.get("transcript")
        if isinstance(transcript, dict):
            nested = transcript.get("text")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()

        segments = payload.get("segments")
        if isinstance(segments, list):
            parts: List[str] = []
            for segment in segments:
                if isinstance(segment, dict):
                    text = segment.get("text")
                    if isinstance(text, str) and text.strip():
                        parts.append(text.strip())
            if parts:
                return " ".join(parts)
        return ""


# ---------------------------------------------------------------------------
# Live chunk queue


# failures that pause the worker before the next chunk
BACKOFF_KINDS = (ErrorKind.TRANSIENT, ErrorKind.UNKNOWN)


class QueueState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    HALTED = "halted"


class ChunkQueue:
    """Feeds live chunks to the transcriber one at a time, in arrival order.

    A single worker thread drains a FIFO guarded by a condition variable. Transient
    and unknown failures are logged and skipped, with a short pause before the next
    attempt. An Unauthorized result halts the queue for good; chunks may still be
    enqueued afterwards but are never sent.
    """

    def __init__(
        self,
        transcriber: HTTPTranscriber,
        *,
        config: Optional[QueueConfig] = None,
        on_partial: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[TranscriptionResult], None]] = None,
        label: str = "MIC",
    ):
        self._transcriber = transcriber
        self.cfg = config or QueueConfig.from_env()
        self.on_partial = on_partial
        self.on_error = on_error
        self.label = label
        self._cond = threading.Condition()
        self._pending: Deque[AudioChunk] = deque()
        self._state = QueueState.IDLE
        self._in_flight = False
        self._retry_at: Optional[float] = None
        self._partial_text = ""
        self._thread: Optional[threading.Thread] = None
        self.last_error: Optional[TranscriptionResult] = None

    @property
    def state(self) -> QueueState:
        with self._cond:
            return self._state

    @property
    def partial_text(self) -> str:
        with self._cond:
            return self._partial_text

    @property
    def pending_count(self) -> int:
        with self._cond:
            return len(self._pending)

    def start(self) -> bool:
        with self._cond:
            if self._state is QueueState.HALTED:
                QUEUE_LOG.warning("%s queue halted; not restarting", self.label)
                return False
            self._state = QueueState.RUNNING
            self._retry_at = None
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=f"{self.label.lower()}-live-stt", daemon=True)
                self._thread.start()
            self._cond.notify_all()
            return True

    def enqueue(self, chunk: AudioChunk) -> bool:
        with self._cond:
            if self._state is QueueState.STOPPING:
                QUEUE_LOG.debug("%s chunk #%d dropped (stopping)", self.label, chunk.sequence)
                return False
            self._pending.append(chunk)
            self._cond.notify_all()
            return True

    def stop(self) -> None:
        """Discard queued chunks; an in-flight call is allowed to finish.

        A halted queue stays halted and only drops its backlog.
        """
        with self._cond:
            if self._state is QueueState.HALTED:
                dropped = len(self._pending)
                self._pending.clear()
            elif self._state is not QueueState.RUNNING:
                return
            else:
                dropped = len(self._pending)
                self._pending.clear()
                self._retry_at = None
                self._state = QueueState.STOPPING if self._in_flight else QueueState.IDLE
            self._cond.notify_all()
        if dropped:
            QUEUE_LOG.info("%s discarded %d queued chunk(s) on stop", self.label, dropped)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is in flight and the queue is empty or no longer running."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._in_flight
                and (self._state is not QueueState.RUNNING or not self._pending),
                timeout,
            )

    # ---- worker ------------------------------------------------------

    def _next_chunk_locked(self) -> Optional[AudioChunk]:
        while True:
            if self._state is not QueueState.RUNNING:
                return None
            if not self._pending:
                self._cond.wait()
                continue
            if self._retry_at is not None:
                remaining = self._retry_at - time.monotonic()
                if remaining > 0:
                    self._cond.wait(remaining)
                    continue
                self._retry_at = None
            return self._pending.popleft()

    def _run(self) -> None:
        while True:
            with self._cond:
                chunk = self._next_chunk_locked()
                if chunk is None:
                    self._thread = None
                    return
                self._in_flight = True

            try:
                result = self._transcriber.transcribe(chunk.data, chunk.mime_type, "partial")
            except Exception as exc:  # noqa: BLE001
                QUEUE_LOG.exception("%s chunk #%d transcription crashed", self.label, chunk.sequence)
                result = TranscriptionResult.failure(ErrorKind.UNKNOWN, str(exc))

            partial: Optional[str] = None
            halted = False
            with self._cond:
                self._in_flight = False
                if result.ok:
                    if self.cfg.accumulate:
                        if result.text:
                            self._partial_text = f"{self._partial_text} {result.text}".strip()
                    else:
                        self._partial_text = result.text
                    partial = self._partial_text
                elif result.error_kind is ErrorKind.UNAUTHORIZED:
                    self._state = QueueState.HALTED
                    self.last_error = result
                    halted = True
                else:
                    self.last_error = result
                    if result.error_kind in BACKOFF_KINDS:
                        self._retry_at = time.monotonic() + self.cfg.retry_delay_s
                    QUEUE_LOG.warning(
                        "%s chunk #%d skipped (%s): %s",
                        self.label,
                        chunk.sequence,
                        result.error_kind.value if result.error_kind else "?",
                        result.error,
                    )
                if self._state is QueueState.STOPPING:
                    self._pending.clear()
                    self._retry_at = None
                    self._state = QueueState.IDLE
                self._cond.notify_all()

            if halted:
                QUEUE_LOG.error("%s live transcription halted: %s", self.label, result.error)
                self._notify(self.on_error, result)
            elif partial is not None:
                self._notify(self.on_partial, partial)

    def _notify(self, callback, value) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:  # noqa: BLE001
            QUEUE_LOG.exception("%s listener failed", self.label)


__all__ = [
    "ErrorKind",
    "PipelineError",
    "AudioChunk",
    "TranscriptionResult",
    "CredentialContext",
    "load_openai_api_key",
    "coerce_payload",
    "resolve_mime_type",
    "classify_status",
    "HTTPTranscriber",
    "QueueState",
    "ChunkQueue",
    "SUPPORTED_MIME_TYPES",
    "TRANSCRIPTION_MODES",
]
