from __future__ import annotations

import base64
import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union
from urllib.parse import quote

from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException
from websockets.sync.client import connect as ws_connect

from config import RealtimeConfig
from stt_core import CredentialContext, ErrorKind, PipelineError, coerce_payload

REALTIME_LOG = logging.getLogger("realtime_stt")


def create_realtime_url(host: str, model: str) -> str:
    return f"wss://{host}/v1/realtime?model={quote(model, safe='')}"


# ---------------------------------------------------------------------------
# Incoming events


@dataclass(frozen=True)
class TextDelta:
    delta: str


@dataclass(frozen=True)
class ResponseCompleted:
    # None when the server sent no output_text at all
    output_text: Optional[str]


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True)
class UnknownEvent:
    type: str


RealtimeEvent = Union[TextDelta, ResponseCompleted, ErrorEvent, UnknownEvent]


def parse_event(raw: Union[str, bytes]) -> RealtimeEvent:
    """Decode one frame into a typed event. Raises ValueError for non-decodable frames."""
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raw = bytes(raw).decode("utf-8")
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("realtime event is not a JSON object")

    etype = payload.get("type")
    if etype == "response.output_text.delta":
        return TextDelta(delta=str(payload.get("delta") or ""))
    if etype == "response.completed":
        response = payload.get("response")
        output = response.get("output_text") if isinstance(response, dict) else None
        if output is None:
            return ResponseCompleted(output_text=None)
        if isinstance(output, list):
            return ResponseCompleted(output_text="".join(str(part) for part in output if part is not None))
        return ResponseCompleted(output_text=str(output))
    if etype == "error":
        error = payload.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        return ErrorEvent(message=str(message or "Realtime session error"))
    return UnknownEvent(type=str(etype or ""))


# ---------------------------------------------------------------------------
# Session


class SessionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


class RealtimeTranscriptionSession:
    """Push-style transcription over one persistent realtime websocket.

    Callers must not overlap ``send_chunk`` calls; completions are not correlated
    with the submission that produced them.
    """

    def __init__(
        self,
        credentials: CredentialContext,
        config: Optional[RealtimeConfig] = None,
        *,
        on_partial: Optional[Callable[[str, bool], None]] = None,
        on_final: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[PipelineError], None]] = None,
        connector: Optional[Callable[..., object]] = None,
    ):
        self.credentials = credentials
        self.cfg = config or RealtimeConfig.from_env()
        self.on_partial = on_partial
        self.on_final = on_final
        self.on_error = on_error
        self._connector = connector or ws_connect
        self._lock = threading.Lock()
        self._ws = None
        self._reader: Optional[threading.Thread] = None
        self._state = SessionState.CONNECTING
        self._partial_text = ""
        self.last_error: Optional[PipelineError] = None

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def partial_text(self) -> str:
        with self._lock:
            return self._partial_text

    def start(self) -> None:
        api_key = self.credentials.require_key()
        with self._lock:
            if self._state is SessionState.READY:
                return

        url = create_realtime_url(self.cfg.host, self.cfg.model)
        headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": self.cfg.beta_header,
        }
        REALTIME_LOG.info("connecting %s", url)
        try:
            ws = self._connector(url, additional_headers=headers, open_timeout=self.cfg.open_timeout_s)
        except InvalidStatus as exc:
            status = exc.response.status_code
            kind = ErrorKind.UNAUTHORIZED if status in (401, 403) else ErrorKind.TRANSIENT
            raise PipelineError(kind, f"Realtime handshake rejected with HTTP {status}") from exc
        except (OSError, TimeoutError, WebSocketException) as exc:
            raise PipelineError(ErrorKind.TRANSIENT, f"Realtime connection failed: {exc}") from exc

        reader = threading.Thread(target=self._read_loop, args=(ws,), name="realtime-reader", daemon=True)
        with self._lock:
            self._ws = ws
            self._state = SessionState.READY
            self._partial_text = ""
            self._reader = reader
        reader.start()
        REALTIME_LOG.info("realtime session ready (model=%s)", self.cfg.model)

    def send_chunk(self, buffer: object, mime_type: str = "audio/webm") -> None:
        with self._lock:
            ws = self._ws if self._state is SessionState.READY else None
        if ws is None:
            raise PipelineError(ErrorKind.NOT_READY, "Realtime connection not ready.")

        payload = coerce_payload(buffer)
        messages = (
            {
                "type": "input_audio_buffer.append",
                "audio": {"data": base64.b64encode(payload).decode("ascii")},
            },
            {"type": "input_audio_buffer.commit"},
            {
                "type": "response.create",
                "response": {
                    "modalities": ["text"],
                    "instructions": self.cfg.instructions,
                },
            },
        )
        REALTIME_LOG.debug("sending %d bytes (%s)", len(payload), mime_type)
        try:
            for message in messages:
                ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            self._mark_closed(ws)
            raise PipelineError(ErrorKind.NOT_READY, f"Realtime connection closed: {exc}") from exc

    def handle_message(self, raw: Union[str, bytes]) -> None:
        try:
            event = parse_event(raw)
        except ValueError as exc:
            REALTIME_LOG.warning("malformed realtime message: %s", exc)
            self._report(PipelineError(ErrorKind.UNPARSEABLE_RESPONSE, f"Malformed realtime message: {exc}"))
            return

        if isinstance(event, TextDelta):
            if not event.delta:
                return
            with self._lock:
                self._partial_text += event.delta
                text = self._partial_text
            self._call(self.on_partial, text, False)
        elif isinstance(event, ResponseCompleted):
            with self._lock:
                final = event.output_text if event.output_text else self._partial_text
                final = final.strip()
                self._partial_text = ""
            if not final:
                REALTIME_LOG.debug("completion without text")
                return
            self._call(self.on_partial, final, True)
            self._call(self.on_final, final)
        elif isinstance(event, ErrorEvent):
            REALTIME_LOG.warning("realtime error event: %s", event.message)
            self._report(PipelineError(ErrorKind.UNKNOWN, event.message))
        else:
            REALTIME_LOG.debug("ignoring realtime event %r", event.type)

    def stop(self) -> None:
        with self._lock:
            ws = self._ws
            was_ready = self._state is SessionState.READY
            reader = self._reader
            self._ws = None
            self._reader = None
            self._state = SessionState.CLOSED
            self._partial_text = ""
        if ws is not None and was_ready:
            try:
                ws.close(code=1000, reason="session-end")
            except WebSocketException as exc:
                REALTIME_LOG.warning("close failed: %s", exc)
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=1.0)

    # ---- helpers -----------------------------------------------------

    def _read_loop(self, ws) -> None:
        try:
            for message in ws:
                self.handle_message(message)
        except ConnectionClosed as exc:
            with self._lock:
                current = self._ws is ws
            if current:
                self._report(PipelineError(ErrorKind.TRANSIENT, f"Realtime connection lost: {exc}"))
        finally:
            self._mark_closed(ws)

    def _mark_closed(self, ws) -> None:
        with self._lock:
            if self._ws is ws:
                self._ws = None
                self._state = SessionState.CLOSED

    def _report(self, error: PipelineError) -> None:
        self.last_error = error
        self._call(self.on_error, error)

    def _call(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # noqa: BLE001
            REALTIME_LOG.exception("realtime listener failed")


__all__ = [
    "RealtimeTranscriptionSession",
    "SessionState",
    "RealtimeEvent",
    "TextDelta",
    "ResponseCompleted",
    "ErrorEvent",
    "UnknownEvent",
    "parse_event",
    "create_realtime_url",
]
