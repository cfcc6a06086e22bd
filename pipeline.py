from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from answer_workflow import AnswerEngine, QAItem
from config import PipelineConfig
from realtime_session import RealtimeTranscriptionSession
from stt_core import (
    AudioChunk,
    ChunkQueue,
    CredentialContext,
    ErrorKind,
    HTTPTranscriber,
    PipelineError,
    TranscriptionResult,
)

PIPE_LOG = logging.getLogger("stt_pipeline")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TranscriptRecord:
    """One finalized transcript and the answers extracted from it."""

    id: str
    title: str
    text: str
    created_at: str
    has_questions: bool
    pending_answers: bool = False
    answers: List[QAItem] = field(default_factory=list)
    answer_error: Optional[str] = None
    answered_at: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "text": self.text,
            "created_at": self.created_at,
            "has_questions": self.has_questions,
            "pending_answers": self.pending_answers,
            "answers": [item.model_dump() for item in self.answers],
            "answer_error": self.answer_error,
            "answered_at": self.answered_at,
        }


class CapturePipeline:
    """Wires live transcription, final transcription and answer extraction to one capture.

    Only one capture runs at a time. Results that arrive after the capture that
    requested them has been stopped are dropped.
    """

    def __init__(
        self,
        credentials: Optional[CredentialContext] = None,
        config: Optional[PipelineConfig] = None,
        *,
        transcriber: Optional[HTTPTranscriber] = None,
        engine: Optional[AnswerEngine] = None,
        realtime_factory: Optional[Callable[..., RealtimeTranscriptionSession]] = None,
        on_partial: Optional[Callable[[str, bool], None]] = None,
        on_record: Optional[Callable[[TranscriptRecord], None]] = None,
        on_error: Optional[Callable[[PipelineError], None]] = None,
    ):
        self.cfg = config or PipelineConfig.from_env()
        self.credentials = credentials or CredentialContext.from_env(base_url=self.cfg.answers.base_url)
        self.transcriber = transcriber or HTTPTranscriber(self.credentials, self.cfg.stt)
        self.engine = engine or AnswerEngine(self.credentials, self.cfg.answers)
        self._realtime_factory = realtime_factory or self._default_realtime
        self.on_partial = on_partial
        self.on_record = on_record
        self.on_error = on_error

        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._session_counter = 0
        self._active_session: Optional[int] = None
        self._queue: Optional[ChunkQueue] = None
        self._realtime: Optional[RealtimeTranscriptionSession] = None
        self._capture_enabled = True
        self._partial_text = ""
        self._knowledge = ""
        self._records: List[TranscriptRecord] = []
        self._record_counter = 0

    # ---- credentials -------------------------------------------------

    def set_credential(self, api_key: Optional[str]) -> Dict[str, object]:
        has_key = self.credentials.set(api_key)
        with self._lock:
            self._capture_enabled = True
        if not has_key:
            return {"ok": True, "cleared": True, "message": "API key cleared."}
        return {"ok": True}

    def clear_credential(self) -> None:
        self.set_credential("")

    def credential_status(self) -> Dict[str, bool]:
        return {"has_key": self.credentials.has_key}

    @property
    def capture_enabled(self) -> bool:
        with self._lock:
            return self._capture_enabled and self.credentials.has_key

    # ---- capture -----------------------------------------------------

    @property
    def is_capturing(self) -> bool:
        with self._lock:
            return self._active_session is not None

    @property
    def partial_text(self) -> str:
        with self._lock:
            return self._partial_text

    def set_knowledge(self, text: Optional[str]) -> None:
        with self._lock:
            self._knowledge = (text or "").strip()

    def start_capture(self, *, realtime: bool = False) -> int:
        with self._lock:
            if not self.credentials.has_key:
                raise PipelineError(ErrorKind.UNAUTHORIZED, "Add your OpenAI API key before recording.")
            if not self._capture_enabled:
                raise PipelineError(ErrorKind.UNAUTHORIZED, "Add a valid API key to continue.")
            if self._active_session is not None:
                raise PipelineError(ErrorKind.NOT_READY, "A capture is already running.")
            self._session_counter += 1
            session_id = self._session_counter
            # the slot is taken before any connect so overlapping starts are refused
            self._active_session = session_id
            self._partial_text = ""

        if realtime:
            session = self._realtime_factory(
                on_partial=lambda text, final: self._on_live_text(session_id, text, final),
                on_error=lambda error: self._on_live_error(session_id, error),
            )
            try:
                session.start()
            except Exception as exc:
                self._release_slot(session_id)
                if isinstance(exc, PipelineError):
                    self._handle_unauthorized(exc.kind)
                raise
            with self._lock:
                live = self._active_session == session_id
                if live:
                    self._realtime = session
            if not live:
                session.stop()
                PIPE_LOG.info("capture #%d stopped while connecting", session_id)
                raise PipelineError(ErrorKind.NOT_READY, "Capture was stopped while connecting.")
        else:
            queue = ChunkQueue(
                self.transcriber,
                config=self.cfg.queue,
                on_partial=lambda text: self._on_live_text(session_id, text, False),
                on_error=lambda result: self._on_live_error(
                    session_id, PipelineError(result.error_kind or ErrorKind.UNKNOWN, result.error or "")
                ),
            )
            with self._lock:
                self._queue = queue
                queue.start()

        PIPE_LOG.info("capture #%d started (%s)", session_id, "realtime" if realtime else "queue")
        return session_id

    def _release_slot(self, session_id: int) -> None:
        with self._lock:
            if self._active_session == session_id:
                self._active_session = None

    def enqueue(self, chunk: AudioChunk) -> bool:
        with self._lock:
            if not self._capture_enabled:
                PIPE_LOG.debug("capture disabled; chunk #%d dropped", chunk.sequence)
                return False
            queue = self._queue
            session = self._realtime
        if session is not None:
            with self._send_lock:
                session.send_chunk(chunk.data, chunk.mime_type)
            return True
        if queue is None:
            PIPE_LOG.debug("no capture running; chunk #%d ignored", chunk.sequence)
            return False
        return queue.enqueue(chunk)

    def stop_capture(self) -> None:
        with self._lock:
            queue, session = self._queue, self._realtime
            session_id = self._active_session
            self._queue = None
            self._realtime = None
            self._active_session = None
        if queue is not None:
            queue.stop()
        if session is not None:
            session.stop()
        if session_id is not None:
            PIPE_LOG.info("capture #%d stopped", session_id)

    def finalize(self, blob: object, mime_type: str = "audio/webm", *, answer: bool = True, wait: bool = False) -> TranscriptionResult:
        """Transcribe the merged capture audio, record it, and start answer extraction."""
        result = self.transcriber.transcribe(blob, mime_type, "final")
        if not result.ok:
            kind = result.error_kind or ErrorKind.UNKNOWN
            self._handle_unauthorized(kind)
            self._emit_error(PipelineError(kind, result.error or "Transcription failed."))
            return result

        record = self._add_record(result.text)
        if record is not None and answer:
            self.request_answers(record.id, wait=wait)
        return result

    # ---- answers -----------------------------------------------------

    def request_answers(self, record_id: str, *, wait: bool = False) -> Optional[threading.Thread]:
        return self._start_answers(record_id, wait=wait, manual=False)

    def re_answer(self, record_id: str, *, wait: bool = False) -> Optional[threading.Thread]:
        """Manually re-run extraction for a saved transcript."""
        return self._start_answers(record_id, wait=wait, manual=True)

    def _start_answers(self, record_id: str, *, wait: bool, manual: bool) -> Optional[threading.Thread]:
        with self._lock:
            record = self._find(record_id)
            if record is None:
                PIPE_LOG.warning("unknown transcript %s", record_id)
                return None
            if record.pending_answers:
                PIPE_LOG.info("answers already pending for %s", record_id)
                return None
            if not self.credentials.has_key:
                PIPE_LOG.info("no API key; answers skipped for %s", record_id)
                return None
            if not manual and self.cfg.answers.only_questions and not record.has_questions:
                return None
            record = self._update_locked(record_id, pending_answers=True, answer_error=None)
            knowledge = self._knowledge
        self._emit_record(record)

        thread = threading.Thread(
            target=self._answer_worker,
            args=(record_id, record.text, knowledge),
            name="answer-runner",
            daemon=True,
        )
        thread.start()
        if wait:
            thread.join()
        return thread

    def _answer_worker(self, record_id: str, transcript: str, knowledge: str) -> None:
        try:
            items = self.engine.extract(transcript, knowledge)
        except PipelineError as exc:
            PIPE_LOG.error("answer extraction failed (%s): %s", exc.kind.value, exc)
            self._handle_unauthorized(exc.kind)
            self._emit_error(exc)
            updates = {"pending_answers": False, "answer_error": str(exc) or "Unable to generate answers."}
        except Exception as exc:  # noqa: BLE001
            PIPE_LOG.exception("answer extraction crashed")
            updates = {"pending_answers": False, "answer_error": f"Unable to generate answers: {exc}"}
        else:
            updates = {
                "pending_answers": False,
                "answers": items,
                "answer_error": None,
                "answered_at": _now_iso(),
            }

        with self._lock:
            if self._find(record_id) is None:
                PIPE_LOG.debug("transcript %s removed before answers arrived", record_id)
                return
            record = self._update_locked(record_id, **updates)
        self._emit_record(record)

    # ---- history -----------------------------------------------------

    def records(self) -> List[TranscriptRecord]:
        with self._lock:
            return list(self._records)

    def get_record(self, record_id: str) -> Optional[TranscriptRecord]:
        with self._lock:
            return self._find(record_id)

    def clear_history(self) -> None:
        with self._lock:
            self._records = []

    def _add_record(self, text: str) -> Optional[TranscriptRecord]:
        trimmed = (text or "").strip()
        if not trimmed:
            PIPE_LOG.info("final transcript empty; nothing recorded")
            return None
        with self._lock:
            self._record_counter += 1
            record = TranscriptRecord(
                id=f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}",
                title=f"Recording {self._record_counter}",
                text=trimmed,
                created_at=_now_iso(),
                has_questions="?" in trimmed,
            )
            self._records.insert(0, record)
            del self._records[self.cfg.history_limit:]
        self._emit_record(record)
        return record

    def _find(self, record_id: str) -> Optional[TranscriptRecord]:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def _update_locked(self, record_id: str, **updates) -> TranscriptRecord:
        for index, record in enumerate(self._records):
            if record.id == record_id:
                updated = replace(record, **updates)
                self._records[index] = updated
                return updated
        raise KeyError(record_id)

    # ---- callbacks ---------------------------------------------------

    def _default_realtime(self, **callbacks) -> RealtimeTranscriptionSession:
        return RealtimeTranscriptionSession(self.credentials, self.cfg.realtime, **callbacks)

    def _on_live_text(self, session_id: int, text: str, is_final: bool) -> None:
        with self._lock:
            if session_id != self._active_session:
                return
            self._partial_text = text
        self._call(self.on_partial, text, is_final)

    def _on_live_error(self, session_id: int, error: PipelineError) -> None:
        self._handle_unauthorized(error.kind)
        with self._lock:
            if session_id != self._active_session:
                return
        if error.kind is ErrorKind.UNAUTHORIZED:
            self._emit_error(error)
        else:
            PIPE_LOG.warning("live transcription hiccup (%s): %s", error.kind.value, error)

    def _handle_unauthorized(self, kind: ErrorKind) -> None:
        if kind is not ErrorKind.UNAUTHORIZED:
            return
        with self._lock:
            self._capture_enabled = False
        PIPE_LOG.error("API key rejected; capture disabled until a new key is set")

    def _emit_record(self, record: TranscriptRecord) -> None:
        self._call(self.on_record, record)

    def _emit_error(self, error: PipelineError) -> None:
        self._call(self.on_error, error)

    def _call(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # noqa: BLE001
            PIPE_LOG.exception("pipeline listener failed")


__all__ = ["CapturePipeline", "TranscriptRecord"]
