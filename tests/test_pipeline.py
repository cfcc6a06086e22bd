import threading
import time

import pytest

from answer_workflow import QAItem
from config import AnswerConfig, PipelineConfig, QueueConfig
from pipeline import CapturePipeline
from stt_core import AudioChunk, CredentialContext, ErrorKind, PipelineError, TranscriptionResult


class StubTranscriber:
    def __init__(self, final=None, partial=None, gate=None):
        self.final = final or TranscriptionResult.success("Tell me about yourself?")
        self.partial = partial or TranscriptionResult.success("Tell me")
        self.gate = gate
        self.started = threading.Event()
        self.calls = []

    def transcribe(self, buffer, mime_type, mode):
        self.calls.append(mode)
        if mode == "final":
            return self.final
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        return self.partial


class StubEngine:
    def __init__(self, items=None, error=None, gate=None):
        self.items = items if items is not None else [QAItem(question="About you?", answer="I build pipelines.")]
        self.error = error
        self.gate = gate
        self.calls = []

    def extract(self, transcript, knowledge_excerpt=""):
        self.calls.append((transcript, knowledge_excerpt))
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.items


class StubSession:
    def __init__(self, on_partial=None, on_error=None):
        self.on_partial = on_partial
        self.on_error = on_error
        self.started = False
        self.stopped = False
        self.sent = []

    def start(self):
        self.started = True

    def send_chunk(self, buffer, mime_type="audio/webm"):
        self.sent.append((buffer, mime_type))

    def stop(self):
        self.stopped = True


def _eventually(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def observed():
    return {"partials": [], "records": [], "errors": []}


def _pipeline(observed, transcriber=None, engine=None, api_key="sk-test", config=None, realtime_factory=None):
    cfg = config or PipelineConfig(queue=QueueConfig(retry_delay_ms=0))
    return CapturePipeline(
        CredentialContext(api_key),
        cfg,
        transcriber=transcriber or StubTranscriber(),
        engine=engine or StubEngine(),
        realtime_factory=realtime_factory,
        on_partial=lambda text, final: observed["partials"].append((text, final)),
        on_record=observed["records"].append,
        on_error=observed["errors"].append,
    )


def test_finalize_records_transcript_and_answers(observed):
    engine = StubEngine()
    pipeline = _pipeline(observed, engine=engine)
    pipeline.set_knowledge("  resume notes ")

    result = pipeline.finalize(b"merged-audio", "audio/webm", wait=True)

    assert result.ok
    [record] = pipeline.records()
    assert record.title == "Recording 1"
    assert record.text == "Tell me about yourself?"
    assert record.has_questions
    assert not record.pending_answers
    assert record.answers == engine.items
    assert record.answered_at is not None
    assert engine.calls == [("Tell me about yourself?", "resume notes")]
    assert [r.pending_answers for r in observed["records"]] == [False, True, False]
    assert record.to_dict()["answers"] == [
        {"question": "About you?", "answer": "I build pipelines.", "source": "general"}
    ]


def test_blank_final_creates_no_record(observed):
    engine = StubEngine()
    pipeline = _pipeline(observed, transcriber=StubTranscriber(final=TranscriptionResult.success("  ")), engine=engine)

    result = pipeline.finalize(b"audio", "audio/webm", wait=True)

    assert result.ok and result.text == ""
    assert pipeline.records() == []
    assert engine.calls == []


def test_unauthorized_final_disables_capture_until_new_key(observed):
    transcriber = StubTranscriber(final=TranscriptionResult.failure(ErrorKind.UNAUTHORIZED, "Incorrect API key"))
    pipeline = _pipeline(observed, transcriber=transcriber)

    result = pipeline.finalize(b"audio", "audio/webm")

    assert not result.ok
    assert [e.kind for e in observed["errors"]] == [ErrorKind.UNAUTHORIZED]
    assert not pipeline.capture_enabled
    with pytest.raises(PipelineError) as excinfo:
        pipeline.start_capture()
    assert excinfo.value.kind is ErrorKind.UNAUTHORIZED

    assert pipeline.set_credential("sk-new") == {"ok": True}
    assert pipeline.capture_enabled


def test_credential_clear_and_status(observed):
    pipeline = _pipeline(observed)

    assert pipeline.credential_status() == {"has_key": True}
    assert pipeline.set_credential("   ") == {"ok": True, "cleared": True, "message": "API key cleared."}
    assert pipeline.credential_status() == {"has_key": False}
    with pytest.raises(PipelineError) as excinfo:
        pipeline.start_capture()
    assert excinfo.value.kind is ErrorKind.UNAUTHORIZED


def test_extraction_failure_keeps_transcript(observed):
    engine = StubEngine(error=PipelineError(ErrorKind.UNPARSEABLE_RESPONSE, "Failed to parse AI response."))
    pipeline = _pipeline(observed, engine=engine)

    pipeline.finalize(b"audio", "audio/webm", wait=True)

    [record] = pipeline.records()
    assert record.text == "Tell me about yourself?"
    assert record.answer_error == "Failed to parse AI response."
    assert not record.pending_answers
    assert record.answers == []
    assert [e.kind for e in observed["errors"]] == [ErrorKind.UNPARSEABLE_RESPONSE]
    assert pipeline.capture_enabled


def test_answers_are_not_requested_twice_while_pending(observed):
    gate = threading.Event()
    engine = StubEngine(gate=gate)
    pipeline = _pipeline(observed, engine=engine)

    pipeline.finalize(b"audio", "audio/webm", answer=False)
    record = pipeline.records()[0]
    thread = pipeline.request_answers(record.id)
    assert pipeline.get_record(record.id).pending_answers
    assert pipeline.re_answer(record.id) is None

    gate.set()
    thread.join(timeout=5)
    assert len(engine.calls) == 1
    assert pipeline.get_record(record.id).answers == engine.items


def test_only_questions_gate_is_bypassed_by_re_answer(observed):
    engine = StubEngine()
    cfg = PipelineConfig(answers=AnswerConfig(only_questions=True))
    pipeline = _pipeline(
        observed,
        transcriber=StubTranscriber(final=TranscriptionResult.success("I worked on search.")),
        engine=engine,
        config=cfg,
    )

    pipeline.finalize(b"audio", "audio/webm", wait=True)
    record = pipeline.records()[0]
    assert not record.has_questions
    assert engine.calls == []

    pipeline.re_answer(record.id, wait=True)
    assert len(engine.calls) == 1
    assert pipeline.get_record(record.id).answered_at is not None


def test_history_is_newest_first_and_capped(observed):
    cfg = PipelineConfig(history_limit=2)
    pipeline = _pipeline(observed, config=cfg)

    for _ in range(3):
        pipeline.finalize(b"audio", "audio/webm", answer=False)

    assert [r.title for r in pipeline.records()] == ["Recording 3", "Recording 2"]
    pipeline.clear_history()
    assert pipeline.records() == []


def test_live_partials_reach_the_listener(observed):
    pipeline = _pipeline(observed)

    pipeline.start_capture()
    assert pipeline.is_capturing
    assert pipeline.enqueue(AudioChunk(b"chunk", "audio/webm", 1))

    assert _eventually(lambda: observed["partials"] == [("Tell me", False)])
    assert pipeline.partial_text == "Tell me"
    pipeline.stop_capture()
    assert not pipeline.is_capturing
    assert pipeline.enqueue(AudioChunk(b"late", "audio/webm", 2)) is False


def test_partial_arriving_after_stop_is_ignored(observed):
    gate = threading.Event()
    transcriber = StubTranscriber(gate=gate)
    pipeline = _pipeline(observed, transcriber=transcriber)

    pipeline.start_capture()
    live_queue = pipeline._queue
    pipeline.enqueue(AudioChunk(b"chunk", "audio/webm", 1))
    assert transcriber.started.wait(timeout=5)

    pipeline.stop_capture()
    gate.set()
    assert live_queue.wait_idle(timeout=5)
    time.sleep(0.05)

    assert observed["partials"] == []
    assert pipeline.partial_text == ""


def test_second_capture_is_rejected(observed):
    pipeline = _pipeline(observed)
    pipeline.start_capture()

    with pytest.raises(PipelineError) as excinfo:
        pipeline.start_capture()

    assert excinfo.value.kind is ErrorKind.NOT_READY
    pipeline.stop_capture()


def test_live_unauthorized_disables_capture(observed):
    transcriber = StubTranscriber(partial=TranscriptionResult.failure(ErrorKind.UNAUTHORIZED, "bad key"))
    pipeline = _pipeline(observed, transcriber=transcriber)

    pipeline.start_capture()
    live_queue = pipeline._queue
    pipeline.enqueue(AudioChunk(b"chunk", "audio/webm", 1))

    assert _eventually(lambda: len(observed["errors"]) == 1)
    assert observed["errors"][0].kind is ErrorKind.UNAUTHORIZED
    assert not pipeline.capture_enabled
    assert pipeline.is_capturing
    assert pipeline.enqueue(AudioChunk(b"more audio", "audio/webm", 2)) is False
    assert live_queue.pending_count == 0
    pipeline.stop_capture()


def test_realtime_capture_routes_chunks_to_the_session(observed):
    sessions = []

    def factory(**callbacks):
        session = StubSession(**callbacks)
        sessions.append(session)
        return session

    pipeline = _pipeline(observed, realtime_factory=factory)

    pipeline.start_capture(realtime=True)
    [session] = sessions
    assert session.started
    assert pipeline.enqueue(AudioChunk(b"window", "audio/wav", 1))
    assert session.sent == [(b"window", "audio/wav")]

    session.on_partial("Why Go?", True)
    assert observed["partials"] == [("Why Go?", True)]

    pipeline.stop_capture()
    assert session.stopped
    session.on_partial("too late", False)
    assert observed["partials"] == [("Why Go?", True)]


class BlockingSession(StubSession):
    """Session whose start() waits until the test lets the handshake finish."""

    def __init__(self, **callbacks):
        super().__init__(**callbacks)
        self.entered = threading.Event()
        self.release = threading.Event()

    def start(self):
        self.entered.set()
        self.release.wait(timeout=5)
        self.started = True


def test_capture_slot_is_held_while_connecting(observed):
    sessions = []

    def factory(**callbacks):
        session = BlockingSession(**callbacks)
        sessions.append(session)
        return session

    pipeline = _pipeline(observed, realtime_factory=factory)
    outcome = {}

    def connect():
        try:
            outcome["id"] = pipeline.start_capture(realtime=True)
        except PipelineError as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=connect)
    worker.start()
    assert _eventually(lambda: bool(sessions) and sessions[0].entered.is_set())

    with pytest.raises(PipelineError) as excinfo:
        pipeline.start_capture()
    assert excinfo.value.kind is ErrorKind.NOT_READY
    assert pipeline.is_capturing

    pipeline.stop_capture()
    sessions[0].release.set()
    worker.join(timeout=5)

    assert outcome["error"].kind is ErrorKind.NOT_READY
    assert sessions[0].stopped
    assert not pipeline.is_capturing
    assert pipeline.enqueue(AudioChunk(b"window", "audio/wav", 1)) is False


def test_failed_connect_frees_the_capture_slot(observed):
    class RefusingSession(StubSession):
        def start(self):
            raise PipelineError(ErrorKind.TRANSIENT, "Realtime connection failed")

    pipeline = _pipeline(observed, realtime_factory=lambda **callbacks: RefusingSession(**callbacks))

    with pytest.raises(PipelineError) as excinfo:
        pipeline.start_capture(realtime=True)
    assert excinfo.value.kind is ErrorKind.TRANSIENT
    assert not pipeline.is_capturing

    pipeline.start_capture()
    assert pipeline.is_capturing
    pipeline.stop_capture()
