import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from answer_workflow import (
    SYSTEM_PROMPT,
    AnswerEngine,
    ExtractionRequest,
    QAItem,
    build_messages,
    coerce_items,
    decode_structured_response,
    parse_answers,
)
from config import AnswerConfig
from stt_core import CredentialContext, ErrorKind, PipelineError

ANSWERS = {"answers": [{"question": "Q1", "answer": "A1", "source": "general"}]}


class StubResponses:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(output_text=self.reply)


def _engine(reply=None, error=None, api_key="sk-test", config=None):
    responses = StubResponses(reply, error)
    client = SimpleNamespace(responses=responses)
    credentials = CredentialContext(api_key, openai_factory=lambda key, base_url: client)
    return AnswerEngine(credentials, config or AnswerConfig()), responses


def test_fenced_reply_with_prose_decodes_on_the_second_attempt():
    raw = 'Sure! ```json\n{"answers":[{"question":"Q1","answer":"A1","source":"general"}]}\n```'

    strategy, value = decode_structured_response(raw)

    assert strategy == "fenced"
    assert value == ANSWERS
    assert parse_answers(raw) == [QAItem(question="Q1", answer="A1", source="general")]


def test_empty_answers_list():
    assert parse_answers('{"answers":[]}') == []
    assert parse_answers("   ") == []


@pytest.mark.parametrize(
    "wrapper",
    [
        "{}",
        "```json\n{}\n```",
        "```\n{}\n```",
        "Here you go:\n{}\nHope that helps.",
    ],
)
def test_wrapping_does_not_change_the_result(wrapper):
    raw = wrapper.replace("{}", json.dumps(ANSWERS))

    assert parse_answers(raw) == parse_answers(json.dumps(ANSWERS))


def test_unparseable_reply_raises():
    with pytest.raises(PipelineError) as excinfo:
        parse_answers("I could not find any questions, sorry.")

    assert excinfo.value.kind is ErrorKind.UNPARSEABLE_RESPONSE
    assert str(excinfo.value) == "Failed to parse AI response."


def test_invalid_items_are_dropped_and_order_is_kept():
    parsed = {
        "answers": [
            {"question": "First?", "answer": "One."},
            {"question": "", "answer": "orphan"},
            "not an object",
            {"question": "Third?", "answer": 5},
            {"question": "Fifth?", "answer": "Five.", "source": "KB"},
            {"question": "  Sixth?  ", "answer": " Six. ", "source": "knowledge_base"},
        ]
    }

    items = coerce_items(parsed)

    assert [(i.question, i.answer, i.source) for i in items] == [
        ("First?", "One.", "general"),
        ("Fifth?", "Five.", "general"),
        ("Sixth?", "Six.", "knowledge_base"),
    ]


def test_bare_list_and_missing_answers_key():
    assert coerce_items([{"question": "Q", "answer": "A"}]) == [QAItem(question="Q", answer="A")]
    assert coerce_items({"result": []}) == []
    assert coerce_items("text") == []


def test_knowledge_is_truncated_before_prompting():
    transcript = "Tell me about your last project?"
    long_request = ExtractionRequest.create(transcript, "x" * 30000, 25000)
    exact_request = ExtractionRequest.create(transcript, "x" * 25000, 25000)

    assert build_messages(long_request) == build_messages(exact_request)
    assert len(long_request.knowledge_excerpt) == 25000


def test_messages_layout():
    with_kb = build_messages(ExtractionRequest.create(" Why Rust? ", "  Rust notes ", 100))
    without_kb = build_messages(ExtractionRequest.create("Why Rust?", "", 100))

    assert with_kb[0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert with_kb[1]["role"] == "user"
    assert with_kb[1]["content"].startswith("Knowledge Base:\nRust notes\n\nTranscript:\nWhy Rust?\n\n")
    assert without_kb[1]["content"].startswith("Transcript:\nWhy Rust?\n\n")
    assert "Knowledge Base" not in without_kb[1]["content"]


def test_engine_calls_the_model_and_parses_items():
    engine, responses = _engine(reply=json.dumps(ANSWERS), config=AnswerConfig(model="gpt-test"))

    items = engine.extract("What is Q1?", "notes")

    assert items == [QAItem(question="Q1", answer="A1")]
    call = responses.calls[0]
    assert call["model"] == "gpt-test"
    assert [m["role"] for m in call["input"]] == ["system", "user"]
    assert "notes" in call["input"][1]["content"]


def test_engine_empty_reply_means_no_answers():
    engine, _ = _engine(reply="   ")

    assert engine.extract("Anything?") == []


def test_engine_skips_blank_transcripts():
    engine, responses = _engine(reply=json.dumps(ANSWERS))

    assert engine.extract("   ") == []
    assert responses.calls == []


def test_engine_without_key_is_unauthorized():
    engine, responses = _engine(reply=json.dumps(ANSWERS), api_key=None)

    with pytest.raises(PipelineError) as excinfo:
        engine.extract("Anything?")

    assert excinfo.value.kind is ErrorKind.UNAUTHORIZED
    assert responses.calls == []


def _status_error(cls, status):
    request = httpx.Request("POST", "https://api.openai.com/v1/responses")
    return cls("rejected", response=httpx.Response(status, request=request), body=None)


@pytest.mark.parametrize(
    "error, kind",
    [
        (_status_error(openai.AuthenticationError, 401), ErrorKind.UNAUTHORIZED),
        (_status_error(openai.RateLimitError, 429), ErrorKind.TRANSIENT),
        (_status_error(openai.InternalServerError, 500), ErrorKind.TRANSIENT),
        (_status_error(openai.BadRequestError, 400), ErrorKind.UNKNOWN),
        (
            openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/responses")),
            ErrorKind.TRANSIENT,
        ),
    ],
)
def test_engine_maps_client_errors(error, kind):
    engine, _ = _engine(error=error)

    with pytest.raises(PipelineError) as excinfo:
        engine.extract("Anything?")

    assert excinfo.value.kind is kind


def test_deeply_nested_reply_is_unparseable():
    raw = "[" * 100000 + "]" * 100000

    with pytest.raises(PipelineError) as excinfo:
        parse_answers(raw)

    assert excinfo.value.kind is ErrorKind.UNPARSEABLE_RESPONSE
