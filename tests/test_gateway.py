import asyncio
import json

import pytest
from prometheus_client import REGISTRY

from praxis.gateway import BUSY_MESSAGE, TutorGateway
from praxis.providers.base import ProviderError, SearchClient, SearchResult, SpeechClient, SynthesizedAudio
from praxis.sessions import SessionRegistry


def _sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class Recorder:
    def __init__(self):
        self.sent = []

    async def __call__(self, message):
        self.sent.append(message)

    def kinds(self):
        return [(m["type"], m.get("requestId")) for m in self.sent]


class FailingSpeech(SpeechClient):
    provider_name = "broken"

    async def synthesize(self, text):
        raise RuntimeError("tts down")


class StaticSpeech(SpeechClient):
    provider_name = "static"

    async def synthesize(self, text):
        return SynthesizedAudio(audio_base64="AAAA", mime_type="audio/mpeg")


async def _started(chat, resolver, speech=None):
    gw = TutorGateway(SessionRegistry(), chat, speech, resolver)
    rec = Recorder()
    conn = gw.open_connection(rec)
    keep_open = await gw.handle_message(conn, json.dumps({"type": "start", "student_email": "ada@example.com"}))
    assert keep_open is True
    assert rec.sent == [{"type": "ready"}]
    return gw, conn, rec


def _user_text(text, rid):
    return json.dumps({"type": "user_text", "text": text, "requestId": rid})


@pytest.mark.asyncio
async def test_second_user_text_while_busy_is_rejected_not_queued(fake_chat_cls, scope_resolver):
    chat = fake_chat_cls(delay=0.05)
    gw, conn, rec = await _started(chat, scope_resolver)
    busy_before = _sample("praxis_turns_total", {"transport": "ws", "outcome": "busy"})

    await gw.handle_message(conn, _user_text("explain sql joins", "a"))
    await gw.handle_message(conn, _user_text("and excel?", "b"))
    await gw.handle_message(conn, _user_text("and power bi?", "c"))
    await conn.turn_task

    assert rec.kinds() == [("ready", None), ("error", "b"), ("error", "c"), ("assistant_text", "a")]
    assert rec.sent[1]["error"] == BUSY_MESSAGE
    assert len(chat.calls) == 1
    assert _sample("praxis_turns_total", {"transport": "ws", "outcome": "busy"}) - busy_before == 2

    # busy flag cleared: the next utterance is accepted
    await gw.handle_message(conn, _user_text("thanks, now sql", "d"))
    await conn.turn_task
    assert rec.kinds()[-1] == ("assistant_text", "d")


@pytest.mark.asyncio
async def test_turn_builds_prompt_from_scope_and_history(fake_chat_cls, scope_resolver):
    chat = fake_chat_cls(reply="Pivot tables summarize data.")
    gw, conn, rec = await _started(chat, scope_resolver, speech=StaticSpeech())

    await gw.handle_message(conn, _user_text("what are pivot tables in excel", "r1"))
    await conn.turn_task

    call = chat.calls[0]
    assert "[CONTEXT]" in call["system"]
    assert "[RESOLVED TOPIC]: pivot tables" in call["system"]
    assert call["max_tokens"] == 512
    assert call["request_id"] == "r1"
    assert call["contents"][-1] == {"role": "user", "parts": [{"text": "what are pivot tables in excel"}]}
    assert rec.sent[-1] == {
        "type": "assistant_text",
        "text": "Pivot tables summarize data.",
        "requestId": "r1",
        "audio": "AAAA",
        "audioMime": "audio/mpeg",
    }
    session = gw.registry.get(conn.connection_id)
    assert [t["role"] for t in session.history] == ["user", "assistant"]
    assert session.last_topic == "pivot tables"
    assert session.busy is False


@pytest.mark.asyncio
async def test_quiz_request_raises_token_cap(fake_chat_cls, scope_resolver):
    chat = fake_chat_cls()
    gw, conn, rec = await _started(chat, scope_resolver)
    await gw.handle_message(conn, _user_text("quiz me on sql", "q1"))
    await conn.turn_task
    assert chat.calls[0]["max_tokens"] == 2048
    assert "[QUIZ MODE OVERRIDE]" in chat.calls[0]["system"]


@pytest.mark.asyncio
async def test_enrollment_question_answered_without_model(fake_chat_cls, scope_resolver):
    chat = fake_chat_cls()
    gw, conn, rec = await _started(chat, scope_resolver)
    await gw.handle_message(conn, _user_text("Which course am I enrolled in?", "m1"))
    await conn.turn_task
    assert chat.calls == []
    assert "Data Analytics" in rec.sent[-1]["text"]


@pytest.mark.asyncio
async def test_llm_failure_is_per_turn_error_and_session_survives(fake_chat_cls, scope_resolver):
    chat = fake_chat_cls(error=ProviderError("Gemini API error: 500"))
    gw, conn, rec = await _started(chat, scope_resolver)

    await gw.handle_message(conn, _user_text("explain sql", "e1"))
    await conn.turn_task
    assert rec.kinds()[-1] == ("error", "e1")

    gw.chat_client = fake_chat_cls(reply="Recovered.")
    await gw.handle_message(conn, _user_text("explain sql again", "e2"))
    await conn.turn_task
    assert rec.sent[-1]["type"] == "assistant_text"
    assert rec.sent[-1]["text"] == "Recovered."


@pytest.mark.asyncio
async def test_llm_timeout_reports_error(fake_chat_cls, scope_resolver, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AI_CHAT_TIMEOUT_SECONDS", "0.01")
    gw, conn, rec = await _started(fake_chat_cls(delay=0.5), scope_resolver)
    await gw.handle_message(conn, _user_text("explain sql", "t1"))
    await conn.turn_task
    assert rec.kinds()[-1] == ("error", "t1")
    assert gw.registry.get(conn.connection_id).busy is False


@pytest.mark.asyncio
async def test_tts_failure_sends_reply_without_audio(fake_chat_cls, scope_resolver):
    before = _sample("praxis_tts_failures_total", {"provider": "broken", "reason": "RuntimeError"})
    gw, conn, rec = await _started(fake_chat_cls(reply="Hi"), scope_resolver, speech=FailingSpeech())
    await gw.handle_message(conn, _user_text("explain sql", "s1"))
    await conn.turn_task
    assert rec.sent[-1] == {"type": "assistant_text", "text": "Hi", "requestId": "s1"}
    assert _sample("praxis_tts_failures_total", {"provider": "broken", "reason": "RuntimeError"}) - before == 1


@pytest.mark.asyncio
async def test_start_seeds_clean_history_and_second_start_replaces(fake_chat_cls, scope_resolver):
    chat = fake_chat_cls()
    gw, conn, rec = await _started(chat, scope_resolver)
    history = [
        {"role": "user", "text": "earlier question"},
        {"role": "assistant", "text": "earlier answer"},
        {"role": "tool", "text": "dropped"},
    ]
    await gw.handle_message(conn, json.dumps({"type": "start", "student_email": "ada@example.com", "history": history}))
    assert rec.sent[-1] == {"type": "ready"}
    assert len(gw.registry) == 1

    await gw.handle_message(conn, _user_text("explain sql", "h1"))
    await conn.turn_task
    texts = [c["parts"][0]["text"] for c in chat.calls[0]["contents"]]
    assert texts == ["earlier question", "earlier answer", "explain sql"]


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_turn_without_reply(fake_chat_cls, scope_resolver):
    chat = fake_chat_cls(delay=1.0)
    gw, conn, rec = await _started(chat, scope_resolver)
    await gw.handle_message(conn, _user_text("explain sql", "x1"))
    task = conn.turn_task

    keep_open = await gw.handle_message(conn, json.dumps({"type": "stop"}))

    assert keep_open is False
    assert task.cancelled()
    assert len(gw.registry) == 0
    assert [m["type"] for m in rec.sent] == ["ready"]
    # closing again is a no-op
    await gw.close_connection(conn)


@pytest.mark.asyncio
async def test_protocol_edges(scope_resolver, fake_chat_cls):
    gw = TutorGateway(SessionRegistry(), fake_chat_cls(), None, scope_resolver)
    rec = Recorder()
    conn = gw.open_connection(rec)

    assert await gw.handle_message(conn, "{not json") is True
    assert await gw.handle_message(conn, json.dumps(["not", "an", "object"])) is True
    assert await gw.handle_message(conn, json.dumps({"type": "mystery"})) is True
    assert rec.sent == []

    await gw.handle_message(conn, _user_text("hello", "n1"))
    assert rec.sent[-1]["type"] == "error"
    assert rec.sent[-1]["error"].startswith("Session not initialized")

    await gw.handle_message(conn, json.dumps({"type": "ping"}))
    assert rec.sent[-1] == {"type": "pong"}


@pytest.mark.asyncio
async def test_empty_user_text_ignored(fake_chat_cls, scope_resolver):
    chat = fake_chat_cls()
    gw, conn, rec = await _started(chat, scope_resolver)
    await gw.handle_message(conn, _user_text("   ", "z1"))
    assert conn.turn_task is None
    assert rec.sent == [{"type": "ready"}]


@pytest.mark.asyncio
async def test_start_refusals(fake_chat_cls, scope_resolver, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MY_LMS_API_KEY", "secret")
    monkeypatch.delenv("REQUIRE_LMS_KEY", raising=False)
    gw = TutorGateway(SessionRegistry(), fake_chat_cls(), None, scope_resolver)

    async def start(**fields):
        rec = Recorder()
        conn = gw.open_connection(rec)
        keep_open = await gw.handle_message(conn, json.dumps({"type": "start", **fields}))
        return keep_open, rec.sent

    assert await start(student_email="ada@example.com", lmsKey="wrong") == (
        False, [{"type": "error", "error": "Invalid LMS key."}]
    )
    assert await start(student_email="nobody@example.com") == (
        False, [{"type": "error", "error": "No active course enrollment found."}]
    )
    assert await start(student_email="ada@example.com", lmsKey="secret") == (True, [{"type": "ready"}])
    assert await start(student_email="ada@example.com") == (True, [{"type": "ready"}])

    monkeypatch.setenv("REQUIRE_LMS_KEY", "1")
    keep_open, sent = await start(student_email="ada@example.com")
    assert keep_open is False and sent[0]["type"] == "error"


def test_supplied_key_rejected_when_none_configured(fake_chat_cls, scope_resolver, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("MY_LMS_API_KEY", raising=False)
    monkeypatch.delenv("REQUIRE_LMS_KEY", raising=False)
    gw = TutorGateway(SessionRegistry(), fake_chat_cls(), None, scope_resolver)
    assert gw.check_lms_key("anything") is False
    assert gw.check_lms_key(None) is True
    assert gw.check_lms_key("") is True


@pytest.mark.asyncio
async def test_model_keyword_fallback_sets_topic(fake_chat_cls, scope_resolver, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TOPIC_MODEL_FALLBACK", "1")
    chat = fake_chat_cls(reply='Sure. {"query": "regression"}')
    gw, conn, rec = await _started(chat, scope_resolver)
    await gw.handle_message(conn, _user_text("hmm", "k1"))
    await conn.turn_task

    assert chat.calls[0]["system"] is None
    assert "[RESOLVED TOPIC]: regression" in chat.calls[1]["system"]
    assert gw.registry.get(conn.connection_id).last_topic == "regression"


@pytest.mark.asyncio
async def test_shutdown_closes_everything(fake_chat_cls, scope_resolver):
    gw, conn, rec = await _started(fake_chat_cls(delay=1.0), scope_resolver)
    await gw.handle_message(conn, _user_text("explain sql", "s1"))
    await gw.shutdown()
    assert gw.stats() == {"connections": 0, "sessions": 0, "busySessions": 0}
    await asyncio.sleep(0)


class FakeSearch(SearchClient):
    provider_name = "fake"

    def __init__(self, results=None, error=None, delay=0.0):
        self.results = results if results is not None else [
            SearchResult("Pivot tables in 10 minutes", "https://www.youtube.com/watch?v=pv1"),
        ]
        self.error = error
        self.delay = delay
        self.calls = []

    async def _run(self, kind, query):
        self.calls.append((kind, query))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.results

    async def search_videos(self, query):
        return await self._run("video", query)

    async def search_articles(self, query):
        return await self._run("article", query)


async def _started_with_search(chat, resolver, search):
    gw, conn, rec = await _started(chat, resolver)
    gw.search_client = search
    return gw, conn, rec


@pytest.mark.asyncio
async def test_video_request_puts_checked_links_in_prompt(fake_chat_cls, scope_resolver):
    chat = fake_chat_cls()
    search = FakeSearch()
    gw, conn, rec = await _started_with_search(chat, scope_resolver, search)
    before = _sample("praxis_search_requests_total", {"kind": "video", "outcome": "ok"})

    await gw.handle_message(conn, _user_text("show me a video on pivot tables", "v1"))
    await conn.turn_task

    assert search.calls == [("video", "pivot tables")]
    system = chat.calls[0]["system"]
    assert "[REQUESTED FORMAT]: video" in system
    assert "- Pivot tables in 10 minutes: https://www.youtube.com/watch?v=pv1" in system
    assert _sample("praxis_search_requests_total", {"kind": "video", "outcome": "ok"}) - before == 1


@pytest.mark.asyncio
async def test_article_request_uses_article_search(fake_chat_cls, scope_resolver):
    chat = fake_chat_cls()
    search = FakeSearch(results=[])
    gw, conn, rec = await _started_with_search(chat, scope_resolver, search)

    await gw.handle_message(conn, _user_text("any articles about sql joins?", "a1"))
    await conn.turn_task

    assert search.calls == [("article", "sql joins")]
    assert "[RESOURCES]: none found" in chat.calls[0]["system"]


@pytest.mark.asyncio
@pytest.mark.parametrize("search,outcome", [
    (FakeSearch(error=ProviderError("Google Search API responded with status 403")), "error"),
    (FakeSearch(delay=1.0), "timeout"),
])
async def test_search_failure_still_replies(fake_chat_cls, scope_resolver, monkeypatch, search, outcome):
    monkeypatch.setenv("SEARCH_BUDGET_SECONDS", "0.05")
    chat = fake_chat_cls(reply="Here is how pivot tables work.")
    gw, conn, rec = await _started_with_search(chat, scope_resolver, search)
    before = _sample("praxis_search_requests_total", {"kind": "video", "outcome": outcome})

    await gw.handle_message(conn, _user_text("youtube video on pivot tables please", "f1"))
    await conn.turn_task

    assert rec.sent[-1]["type"] == "assistant_text"
    assert "[RESOURCES]: none found" in chat.calls[0]["system"]
    assert _sample("praxis_search_requests_total", {"kind": "video", "outcome": outcome}) - before == 1


@pytest.mark.asyncio
async def test_plain_question_does_not_search(fake_chat_cls, scope_resolver):
    chat = fake_chat_cls()
    search = FakeSearch()
    gw, conn, rec = await _started_with_search(chat, scope_resolver, search)
    await gw.handle_message(conn, _user_text("explain sql joins", "p1"))
    await conn.turn_task
    assert search.calls == []
    assert "[RESOURCES]" not in chat.calls[0]["system"]


@pytest.mark.asyncio
async def test_no_search_client_leaves_prompt_unchanged(fake_chat_cls, scope_resolver):
    chat = fake_chat_cls()
    gw, conn, rec = await _started(chat, scope_resolver)
    await gw.handle_message(conn, _user_text("show me a video on pivot tables", "n2"))
    await conn.turn_task
    assert "[RESOURCES]" not in chat.calls[0]["system"]
