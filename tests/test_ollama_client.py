"""Tests for the Ollama client: request shape, stream events and failures."""

from __future__ import annotations

import pytest
import requests
from urllib3.exceptions import ProtocolError, ReadTimeoutError

from conftest import FakeClock, ManualClock, ndjson
from llamachat.infra.llm.base import ChatMessage, ChatRequest, GenerateRequest
from llamachat.infra.llm.errors import (
    EndpointError,
    IncompleteStreamError,
    StreamTimeoutError,
    StreamUnavailableError,
    TransportError,
)
from llamachat.infra.llm.ollama_client import OllamaClient


def _request(**kw) -> ChatRequest:
    kw.setdefault("model", "llama3")
    kw.setdefault("messages", [ChatMessage(role="user", content="hi")])
    return ChatRequest(**kw)


def _rec(content, done=False, **extra):
    return {"message": {"role": "assistant", "content": content}, "done": done, **extra}


def _client(session, **kw) -> OllamaClient:
    return OllamaClient("http://ollama.test/", session=session, **kw)


class _ClosedBody:
    """A body with nothing to read from."""

    def close(self):
        pass


class TestRequestShape:
    def test_stream_forces_stream_true(self, session, make_response):
        session.post.return_value = make_response([ndjson(_rec("", done=True))])
        client = _client(session)

        list(client.stream_chat(_request(stream=False, options={"temperature": 0.2})))

        args, kwargs = session.post.call_args
        assert args[0] == "http://ollama.test/api/chat"
        assert kwargs["stream"] is True
        assert kwargs["json"] == {
            "model": "llama3",
            "messages": [{"role": "user", "content": "hi"}],
            "stream": True,
            "options": {"temperature": 0.2},
        }
        assert kwargs["timeout"] == (client.connect_timeout, client.idle_timeout)

    def test_options_omitted_when_empty(self, session, make_response):
        session.post.return_value = make_response([ndjson(_rec("", done=True))])
        list(_client(session).stream_chat(_request()))
        assert "options" not in session.post.call_args.kwargs["json"]

    @pytest.mark.parametrize(
        "kw",
        [
            {"model": ""},
            {"messages": []},
            {"messages": [ChatMessage("user", "a"), ChatMessage("system", "late")]},
            {"messages": [ChatMessage("tool", "x")]},
            {"options": {"temperature": "hot"}},
        ],
    )
    def test_invalid_request_fails_before_io(self, session, kw):
        with pytest.raises(ValueError):
            _client(session).stream_chat(_request(**kw))
        session.post.assert_not_called()

    def test_system_message_first_is_accepted(self, session, make_response):
        session.post.return_value = make_response([ndjson(_rec("", done=True))])
        req = _request(messages=[ChatMessage("system", "be brief"), ChatMessage("user", "hi")])
        events = list(_client(session).stream_chat(req))
        assert events[-1].type == "end"

    def test_request_is_immutable(self):
        req = _request(options={"top_p": 0.9})
        with pytest.raises(Exception):
            req.model = "other"
        with pytest.raises(TypeError):
            req.options["top_p"] = 1.0

    def test_boolean_runner_switches_are_accepted(self):
        GenerateRequest(model="llama3", prompt="hi", options={"penalize_newline": False, "use_mmap": True}).validate()
        _request(options={"num_ctx": 4096, "use_mlock": True}).validate()

    @pytest.mark.parametrize("options", [
        {"temperature": True},
        {"penalize_newline": 1},
        {"num_ctx": "4096"},
    ])
    def test_option_types_are_checked(self, options):
        with pytest.raises(ValueError):
            GenerateRequest(model="llama3", prompt="hi", options=options).validate()


class TestStreamEvents:
    def test_event_sequence(self, session, make_response):
        body = ndjson(
            _rec("Hel"),
            _rec("lo!"),
            _rec("", done=True, done_reason="stop", eval_count=3, prompt_eval_count=5),
        )
        session.post.return_value = make_response([body])

        events = list(_client(session).stream_chat(_request()))

        assert [e.type for e in events] == ["start", "delta", "delta", "delta", "end"]
        assert [e.text for e in events if e.type == "delta"] == ["Hel", "lo!", ""]
        end = events[-1]
        assert end.text == "Hello!"
        assert end.finish_reason == "stop"
        assert end.usage == {"prompt_eval_count": 5, "eval_count": 3}

    def test_stops_reading_after_done(self, session, make_response):
        resp = make_response([
            ndjson(_rec("a", done=True)),
            ndjson(_rec("never")),
            ndjson(_rec("never", done=True)),
        ])
        session.post.return_value = resp

        events = list(_client(session).stream_chat(_request()))

        assert events[-1].text == "a"
        assert resp.raw.reads == 1
        assert resp.raw.closed

    def test_trailing_record_without_newline(self, session, make_response):
        body = ndjson(_rec("x")) + b'{"message":{"content":"y"},"done":true}'
        session.post.return_value = make_response([body])
        events = list(_client(session).stream_chat(_request()))
        assert events[-1].type == "end"
        assert events[-1].text == "xy"

    def test_malformed_lines_are_skipped(self, session, make_response, caplog):
        body = (
            ndjson(_rec("a"))
            + b"not json at all\n"
            + b"[1, 2]\n"
            + b'{"message": {"content": 7}, "done": false}\n'
            + ndjson(_rec("b"), _rec("", done=True))
        )
        session.post.return_value = make_response([body])

        with caplog.at_level("WARNING", logger="llm.stream"):
            events = list(_client(session).stream_chat(_request()))

        assert [e.text for e in events if e.type == "delta"] == ["a", "b", ""]
        assert events[-1].text == "ab"
        assert events[-1].skipped == 3
        assert sum("malformed" in r.getMessage() for r in caplog.records) == 3

    def test_done_record_without_message(self, session, make_response):
        body = ndjson(_rec("hi"), {"done": True})
        session.post.return_value = make_response([body])
        events = list(_client(session).stream_chat(_request()))
        assert events[-1].type == "end"
        assert events[-1].text == "hi"

    def test_error_record_raises(self, session, make_response):
        body = ndjson(_rec("par"), {"error": "model crashed"})
        session.post.return_value = make_response([body])
        with pytest.raises(EndpointError, match="model crashed"):
            list(_client(session).stream_chat(_request()))

    def test_accumulator_is_per_call(self, session, make_response):
        session.post.side_effect = [
            make_response([ndjson(_rec("one"), _rec("", done=True))]),
            make_response([ndjson(_rec("two"), _rec("", done=True))]),
        ]
        client = _client(session)
        first = list(client.stream_chat(_request()))[-1].text
        second = list(client.stream_chat(_request()))[-1].text
        assert (first, second) == ("one", "two")


class TestFailures:
    def test_non_success_status(self, session, make_response):
        session.post.return_value = make_response(
            [b'{"error":"model \\"nope\\" not found"}'], status=404, reason="Not Found")
        with pytest.raises(EndpointError) as exc:
            list(_client(session).stream_chat(_request()))
        assert exc.value.status == 404
        assert "Not Found" in str(exc.value)
        assert "not found" in str(exc.value)

    def test_no_body(self, session, make_response):
        resp = make_response()
        resp.raw = _ClosedBody()
        session.post.return_value = resp
        with pytest.raises(StreamUnavailableError):
            list(_client(session).stream_chat(_request()))

    def test_early_close_is_incomplete(self, session, make_response):
        session.post.return_value = make_response([ndjson(_rec("par"), _rec("tial"))])
        with pytest.raises(IncompleteStreamError) as exc:
            list(_client(session).stream_chat(_request()))
        assert exc.value.partial == "partial"

    def test_early_close_with_complete_policy(self, session, make_response):
        session.post.return_value = make_response([ndjson(_rec("par"), _rec("tial"))])
        events = list(_client(session, incomplete_policy="complete").stream_chat(_request()))
        assert events[-1].type == "end"
        assert events[-1].text == "partial"
        assert events[-1].finish_reason == "incomplete"

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            OllamaClient(incomplete_policy="maybe")

    def test_connection_refused(self, session):
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(TransportError):
            list(_client(session).stream_chat(_request()))

    def test_connect_timeout_is_transport_error(self, session):
        session.post.side_effect = requests.ConnectTimeout("slow")
        with pytest.raises(TransportError) as exc:
            list(_client(session).stream_chat(_request()))
        assert not isinstance(exc.value, StreamTimeoutError)

    def test_read_timeout_before_headers(self, session):
        session.post.side_effect = requests.ReadTimeout("stalled")
        with pytest.raises(StreamTimeoutError):
            list(_client(session).stream_chat(_request()))

    def test_connection_reset_mid_stream(self, session, make_response):
        resp = make_response([ndjson(_rec("a"))], error=ProtocolError("Connection broken"))
        session.post.return_value = resp
        seen = []
        with pytest.raises(TransportError):
            for ev in _client(session).stream_chat(_request()):
                seen.append(ev)
        assert [e.text for e in seen if e.type == "delta"] == ["a"]
        assert resp.raw.closed

    def test_socket_idle_timeout_mid_stream(self, session, make_response):
        err = ReadTimeoutError(None, "/api/chat", "Read timed out.")
        session.post.return_value = make_response([ndjson(_rec("a"))], error=err)
        with pytest.raises(StreamTimeoutError):
            list(_client(session).stream_chat(_request()))

    def test_clock_idle_timeout(self, session, make_response):
        """A gap longer than idle_timeout between chunks fails the stream."""
        session.post.return_value = make_response([ndjson(_rec("a")), ndjson(_rec("b"))])
        client = _client(session, idle_timeout=10, clock=FakeClock(0, 1, 1, 30))
        seen = []
        with pytest.raises(StreamTimeoutError):
            for ev in client.stream_chat(_request()):
                seen.append(ev)
        assert [e.text for e in seen if e.type == "delta"] == ["a"]

    def test_slow_consumer_is_not_idle(self, session, make_response):
        """Time the caller spends between events does not count against the server."""
        session.post.return_value = make_response(
            [ndjson(_rec("a")), ndjson(_rec("b")), ndjson(_rec("", done=True))])
        clock = ManualClock()
        client = _client(session, idle_timeout=3, clock=clock)

        events = []
        for ev in client.stream_chat(_request()):
            events.append(ev)
            clock.advance(5)

        assert events[-1].type == "end"
        assert events[-1].text == "ab"

    def test_idle_timeout_disabled(self, session, make_response):
        session.post.return_value = make_response([ndjson(_rec("a")), ndjson(_rec("", done=True))])
        client = _client(session, idle_timeout=None, clock=FakeClock(0, 1, 10_000))
        assert list(client.stream_chat(_request()))[-1].text == "a"


class TestCancellation:
    def test_cancel_before_start(self, session, make_response):
        session.post.return_value = make_response([ndjson(_rec("a", done=True))])
        events = list(_client(session).stream_chat(_request(), stop_fn=lambda: True))
        assert [e.type for e in events] == ["cancelled"]

    def test_cancel_mid_stream(self, session, make_response):
        resp = make_response([ndjson(_rec("a")), ndjson(_rec("b")), ndjson(_rec("", done=True))])
        session.post.return_value = resp
        stopped = []
        events = []
        for ev in _client(session).stream_chat(_request(), stop_fn=lambda: bool(stopped)):
            events.append(ev)
            if ev.type == "delta":
                stopped.append(True)

        assert [e.type for e in events] == ["start", "delta", "cancelled"]
        assert resp.raw.reads == 2
        assert resp.raw.closed

    def test_closing_the_iterator_closes_the_response(self, session, make_response):
        resp = make_response([ndjson(_rec("a")), ndjson(_rec("b"))])
        session.post.return_value = resp
        it = _client(session).stream_chat(_request())
        next(it)
        next(it)
        it.close()
        assert resp.raw.closed


class TestNonStreaming:
    def test_chat(self, session, make_response):
        session.post.return_value = make_response(
            [b'{"message":{"role":"assistant","content":"Hello!"},"done":true}'])
        msg = _client(session).chat(_request())
        assert msg.role == "assistant"
        assert msg.content == "Hello!"
        assert msg.timestamp is not None
        assert session.post.call_args.kwargs["json"]["stream"] is False

    def test_chat_error_status(self, session, make_response):
        session.post.return_value = make_response([b"boom"], status=500, reason="Internal Server Error")
        with pytest.raises(EndpointError, match="500"):
            _client(session).chat(_request())

    def test_generate(self, session, make_response):
        session.post.return_value = make_response(
            [b'{"response":"42","done":true}'], url="http://ollama.test/api/generate")
        out = _client(session).generate(GenerateRequest(model="llama3", prompt="answer?", system="terse"))
        assert out == "42"
        args, kwargs = session.post.call_args
        assert args[0] == "http://ollama.test/api/generate"
        assert kwargs["json"] == {"model": "llama3", "prompt": "answer?", "stream": False, "system": "terse"}

    def test_stream_generate(self, session, make_response):
        body = ndjson({"response": "4", "done": False}, {"response": "2", "done": False},
                      {"response": "", "done": True})
        session.post.return_value = make_response([body])
        events = list(_client(session).stream_generate(GenerateRequest(model="llama3", prompt="?")))
        assert events[-1].type == "end"
        assert events[-1].text == "42"


class TestFromSettings:
    def test_reads_ollama_section(self):
        cfg = {"ollama": {"base_url": "http://box:1234/", "connect_timeout": 2,
                          "idle_timeout": 9, "incomplete_policy": "complete"}}
        client = OllamaClient.from_settings(cfg)
        assert client.base_url == "http://box:1234"
        assert client.timeout == (2.0, 9)
        assert client.incomplete_policy == "complete"
