import asyncio

import pytest

from chatharness.catalog import Catalog, ModelInfo, ModelRef
from chatharness.errors import ErrorKind, ProviderError, VersionConflictError
from chatharness.harness import FallbackPolicy, Harness, Router, SessionBinder
from chatharness.messages import (
    BlockKind,
    Message,
    Request,
    Response,
    Role,
    StopReason,
    assistant_text,
    user_text,
)
from chatharness.streaming import Provider, StreamEvent, StreamReader, StreamState, EventKind
from chatharness.validate import ValidationError


class ScriptedProvider(Provider):
    def __init__(self, name, resp=None, err=None, reader=None, stream_err=None, delay=0.0, models=()):
        self._name = name
        self.resp = resp if resp is not None else Response()
        self.err = err
        self.reader = reader
        self.stream_err = stream_err
        self.delay = delay
        self._models = list(models)
        self.calls = 0
        self.stream_calls = 0
        self.seen = None

    def name(self):
        return self._name

    def models(self):
        return self._models

    async def send(self, req):
        self.calls += 1
        self.seen = req
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.err is not None:
            raise self.err
        return self.resp

    async def stream(self, req):
        self.stream_calls += 1
        self.seen = req
        if self.stream_err is not None:
            raise self.stream_err
        return self.reader


class ListReader(StreamReader):
    def __init__(self, events):
        self._events = list(events)
        self._state = StreamState.OPENED
        self.closed = False

    async def next(self):
        if not self._events:
            self._state = StreamState.COMPLETED
            raise StopAsyncIteration
        return self._events.pop(0)

    def state(self):
        return self._state

    async def close(self):
        self.closed = True


class StaticRouter(Router):
    def __init__(self, refs):
        self.refs = refs

    async def pick(self, req):
        return list(self.refs)


class EchoProvider(Provider):
    def __init__(self):
        self.last = []

    def name(self):
        return "echo"

    def models(self):
        return []

    async def send(self, req):
        self.last = list(req.messages)
        reply = ""
        for message in reversed(req.messages):
            if message.role == Role.USER:
                for block in message.content:
                    if block.kind == BlockKind.TEXT:
                        reply = "echo: " + block.text
                        break
                break
        return Response(
            id="r1",
            ref=ModelRef("echo", "m1"),
            message=assistant_text(reply),
            stop_reason=StopReason.END,
        )

    async def stream(self, req):
        raise RuntimeError("not used")


class MemoryBinder(SessionBinder):
    def __init__(self):
        self.data = {}

    async def load(self, session_id):
        if session_id not in self.data:
            return "", [], 0
        system, msgs, version = self.data[session_id]
        return system, list(msgs), version

    async def append(self, session_id, expected_version, *args):
        system, msgs, version = self.data.get(session_id, ("", [], 0))
        if version != expected_version:
            raise VersionConflictError()
        self.data[session_id] = (system, [*msgs, *args], version + 1)
        return version + 1


def two_refs():
    return [ModelRef("a", "m1"), ModelRef("b", "m2")]


@pytest.mark.asyncio
async def test_fallback_tries_next_on_rate_limit():
    rate_limited = ScriptedProvider("a", err=ProviderError(ErrorKind.RATE_LIMIT, "a", "m1"))
    happy = ScriptedProvider(
        "b",
        resp=Response(ref=ModelRef("b", "m2"), message=assistant_text("ok"), stop_reason=StopReason.END),
    )
    h = Harness(
        providers=[rate_limited, happy],
        router=StaticRouter(two_refs()),
        fallback=FallbackPolicy(fallback_on_kinds={ErrorKind.RATE_LIMIT}),
    )
    resp = await h.send(Request(messages=[user_text("hi")]))
    assert resp.ref.provider == "b"
    assert rate_limited.calls == 1 and happy.calls == 1
    assert len(resp.attempts) == 2
    assert resp.attempts[0].error.kind == ErrorKind.RATE_LIMIT
    assert resp.attempts[1].error is None


@pytest.mark.asyncio
async def test_fallback_not_after_output():
    midstream = ScriptedProvider(
        "a", err=ProviderError(ErrorKind.RATE_LIMIT, "a", "m1", after_output=True)
    )
    other = ScriptedProvider("b", resp=Response(message=assistant_text("never")))
    h = Harness(
        providers=[midstream, other],
        router=StaticRouter(two_refs()),
        fallback=FallbackPolicy(fallback_on_kinds={ErrorKind.RATE_LIMIT}),
    )
    with pytest.raises(ProviderError) as info:
        await h.send(Request(messages=[user_text("hi")]))
    assert info.value.after_output is True
    assert other.calls == 0


@pytest.mark.asyncio
async def test_fallback_not_on_unlisted_kind():
    bad = ScriptedProvider("a", err=ProviderError(ErrorKind.AUTH_FAILED, "a", "m1"))
    other = ScriptedProvider("b")
    h = Harness(
        providers=[bad, other],
        router=StaticRouter(two_refs()),
        fallback=FallbackPolicy(fallback_on_kinds={ErrorKind.RATE_LIMIT}),
    )
    with pytest.raises(ProviderError) as info:
        await h.send(Request(messages=[user_text("hi")]))
    assert info.value.kind == ErrorKind.AUTH_FAILED
    assert other.calls == 0


@pytest.mark.asyncio
async def test_fallback_context_length_only_to_larger_window():
    too_small = ScriptedProvider("a", err=ProviderError(ErrorKind.CONTEXT_LENGTH, "a", "small"))
    also_small = ScriptedProvider("b")
    big = ScriptedProvider("c", resp=Response(ref=ModelRef("c", "big"), message=assistant_text("ok")))
    cat = Catalog()
    cat.register(ModelInfo(ref=ModelRef("a", "small"), context_tokens=8000))
    cat.register(ModelInfo(ref=ModelRef("b", "alsosmall"), context_tokens=8000))
    cat.register(ModelInfo(ref=ModelRef("c", "big"), context_tokens=400000))
    h = Harness(
        providers=[too_small, also_small, big],
        catalog=cat,
        router=StaticRouter(
            [ModelRef("a", "small"), ModelRef("b", "alsosmall"), ModelRef("c", "big")]
        ),
        fallback=FallbackPolicy(fallback_on_kinds={ErrorKind.CONTEXT_LENGTH}),
    )
    resp = await h.send(Request(messages=[user_text("huge prompt")]))
    assert also_small.calls == 0
    assert big.calls == 1
    assert resp.ref.provider == "c"


@pytest.mark.asyncio
async def test_context_length_with_no_larger_candidate_raises():
    too_small = ScriptedProvider("a", err=ProviderError(ErrorKind.CONTEXT_LENGTH, "a", "small"))
    also_small = ScriptedProvider("b")
    cat = Catalog()
    cat.register(ModelInfo(ref=ModelRef("a", "small"), context_tokens=8000))
    cat.register(ModelInfo(ref=ModelRef("b", "alsosmall"), context_tokens=4000))
    h = Harness(
        providers=[too_small, also_small],
        catalog=cat,
        router=StaticRouter([ModelRef("a", "small"), ModelRef("b", "alsosmall")]),
        fallback=FallbackPolicy(fallback_on_kinds={ErrorKind.CONTEXT_LENGTH}),
    )
    with pytest.raises(ProviderError) as info:
        await h.send(Request(messages=[user_text("x")]))
    assert info.value.kind == ErrorKind.CONTEXT_LENGTH
    assert also_small.calls == 0


@pytest.mark.asyncio
async def test_max_attempts_caps_candidates():
    a = ScriptedProvider("a", err=ProviderError(ErrorKind.RATE_LIMIT, "a", "m1"))
    b = ScriptedProvider("b", resp=Response(message=assistant_text("ok")))
    h = Harness(
        providers=[a, b],
        router=StaticRouter(two_refs()),
        fallback=FallbackPolicy(fallback_on_kinds={ErrorKind.RATE_LIMIT}, max_attempts=1),
    )
    with pytest.raises(ProviderError):
        await h.send(Request(messages=[user_text("hi")]))
    assert b.calls == 0


@pytest.mark.asyncio
async def test_per_attempt_timeout_falls_back():
    slow = ScriptedProvider("a", delay=2.0, resp=Response(message=assistant_text("late")))
    fast = ScriptedProvider("b", resp=Response(message=assistant_text("fast")))
    h = Harness(
        providers=[slow, fast],
        router=StaticRouter(two_refs()),
        fallback=FallbackPolicy(fallback_on_kinds={ErrorKind.TIMEOUT}, per_attempt_timeout=0.05),
    )
    resp = await h.send(Request(messages=[user_text("hi")]))
    assert resp.message.content[0].text == "fast"
    assert resp.attempts[0].error.kind == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_unregistered_provider_skipped():
    b = ScriptedProvider("b", resp=Response(message=assistant_text("ok")))
    h = Harness(providers=[b], router=StaticRouter([ModelRef("ghost", "m"), ModelRef("b", "m2")]))
    resp = await h.send(Request(messages=[user_text("hi")]))
    assert resp.ref == ModelRef("b", "m2")
    assert resp.attempts[0].error.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_non_provider_error_recorded_as_unknown_and_raised():
    a = ScriptedProvider("a", err=KeyError("boom"))
    h = Harness(providers=[a])
    with pytest.raises(KeyError):
        await h.send(Request(model="a:m1", messages=[user_text("hi")]))


@pytest.mark.asyncio
async def test_explicit_model_sets_ref_and_forwards_model():
    a = ScriptedProvider("a", resp=Response(id="x", message=assistant_text("ok")))
    h = Harness(providers=[a])
    resp = await h.send(Request(model="a:m1", messages=[user_text("hi")]))
    assert resp.ref == ModelRef("a", "m1")
    assert a.seen.model == "a:m1"
    assert resp.id == "x"
    assert resp.latency >= 0


@pytest.mark.asyncio
async def test_no_router_and_no_model_fails():
    h = Harness(providers=[ScriptedProvider("a")])
    with pytest.raises(RuntimeError, match="no router configured"):
        await h.send(Request(messages=[user_text("hi")]))


@pytest.mark.asyncio
async def test_router_with_no_candidates_fails():
    h = Harness(providers=[ScriptedProvider("a")], router=StaticRouter([]))
    with pytest.raises(RuntimeError, match="no candidates"):
        await h.send(Request(messages=[user_text("hi")]))


@pytest.mark.asyncio
async def test_invalid_request_raises_validation_error():
    h = Harness(providers=[ScriptedProvider("a")])
    with pytest.raises(ValidationError):
        await h.send(Request(model="a:m1"))


@pytest.mark.asyncio
async def test_sessions_multi_turn_accumulates():
    binder = MemoryBinder()
    prov = EchoProvider()
    h = Harness(providers=[prov], sessions=binder)

    resp = await h.send(Request(model="echo:m1", session_id="convo-1", messages=[user_text("first")]))
    assert resp.message.content[0].text == "echo: first"
    assert len(prov.last) == 1

    await h.send(Request(model="echo:m1", session_id="convo-1", messages=[user_text("second")]))
    assert len(prov.last) == 3
    assert [m.content[0].text for m in prov.last] == ["first", "echo: first", "second"]

    _, msgs, version = binder.data["convo-1"]
    assert len(msgs) == 4
    assert version == 2


@pytest.mark.asyncio
async def test_sessions_rejected_without_store():
    h = Harness(providers=[EchoProvider()])
    with pytest.raises(RuntimeError, match="no session store"):
        await h.send(Request(model="echo:m1", session_id="x", messages=[user_text("hi")]))


@pytest.mark.asyncio
async def test_session_system_prompt_applied():
    binder = MemoryBinder()
    binder.data["s"] = ("be terse", [], 1)
    a = ScriptedProvider("a", resp=Response(message=assistant_text("ok")))
    h = Harness(providers=[a], sessions=binder)
    await h.send(Request(model="a:m1", session_id="s", messages=[user_text("hi")]))
    assert a.seen.system == "be terse"
    assert binder.data["s"][2] == 2


@pytest.mark.asyncio
async def test_session_append_failure_surfaces():
    class ConflictBinder(MemoryBinder):
        async def append(self, session_id, expected_version, *args):
            raise VersionConflictError()

    a = ScriptedProvider("a", resp=Response(message=assistant_text("ok")))
    h = Harness(providers=[a], sessions=ConflictBinder())
    with pytest.raises(RuntimeError, match="session append failed") as info:
        await h.send(Request(model="a:m1", session_id="s", messages=[user_text("hi")]))
    assert isinstance(info.value.__cause__, VersionConflictError)


@pytest.mark.asyncio
async def test_stream_returns_reader_events():
    reader = ListReader([StreamEvent(kind=EventKind.MESSAGE_START), StreamEvent(kind=EventKind.MESSAGE_STOP)])
    a = ScriptedProvider("a", reader=reader)
    h = Harness(providers=[a])
    got = await h.stream(Request(model="a:m1", messages=[user_text("hi")]))
    async with got:
        kinds = [ev.kind async for ev in got]
    assert kinds == [EventKind.MESSAGE_START, EventKind.MESSAGE_STOP]
    assert reader.closed is True
    assert a.seen.model == "a:m1"


@pytest.mark.asyncio
async def test_stream_handshake_fallback():
    reader = ListReader([])
    a = ScriptedProvider("a", stream_err=ProviderError(ErrorKind.OVERLOADED, "a", "m1"))
    b = ScriptedProvider("b", reader=reader)
    h = Harness(
        providers=[a, b],
        router=StaticRouter(two_refs()),
        fallback=FallbackPolicy(fallback_on_kinds={ErrorKind.OVERLOADED}),
    )
    got = await h.stream(Request(messages=[user_text("hi")]))
    assert got is reader
    assert a.stream_calls == 1 and b.stream_calls == 1


@pytest.mark.asyncio
async def test_stream_non_fallback_error_raises():
    a = ScriptedProvider("a", stream_err=ProviderError(ErrorKind.AUTH_FAILED, "a", "m1"))
    b = ScriptedProvider("b", reader=ListReader([]))
    h = Harness(providers=[a, b], router=StaticRouter(two_refs()))
    with pytest.raises(ProviderError) as info:
        await h.stream(Request(messages=[user_text("hi")]))
    assert info.value.kind == ErrorKind.AUTH_FAILED
    assert b.stream_calls == 0


@pytest.mark.asyncio
async def test_stream_all_candidates_failed():
    h = Harness(router=StaticRouter([ModelRef("ghost", "m")]))
    with pytest.raises(RuntimeError, match="all stream candidates failed"):
        await h.stream(Request(messages=[user_text("hi")]))


@pytest.mark.asyncio
async def test_stream_merges_session_history():
    binder = MemoryBinder()
    binder.data["s"] = ("", [user_text("old"), assistant_text("reply")], 1)
    a = ScriptedProvider("a", reader=ListReader([]))
    h = Harness(providers=[a], sessions=binder)
    await h.stream(Request(model="a:m1", session_id="s", messages=[user_text("new")]))
    assert [m.content[0].text for m in a.seen.messages] == ["old", "reply", "new"]


def test_catalog_seeded_from_provider_models():
    info = ModelInfo(ref=ModelRef("a", "m1"), context_tokens=1000)
    h = Harness(providers=[ScriptedProvider("a", models=[info])])
    assert h.catalog().lookup(ModelRef("a", "m1")).context_tokens == 1000


def test_providers_and_later_registration_replaces():
    first = ScriptedProvider("a")
    second = ScriptedProvider("a")
    h = Harness(providers=[first, ScriptedProvider("b")])
    h.add_provider(second)
    assert sorted(h.providers()) == ["a", "b"]
    assert h.sessions() is None


@pytest.mark.asyncio
async def test_set_router_and_fallback():
    a = ScriptedProvider("a", err=ProviderError(ErrorKind.SERVER_ERROR, "a", "m1"))
    b = ScriptedProvider("b", resp=Response(message=assistant_text("ok")))
    h = Harness(providers=[a, b])
    h.set_router(StaticRouter(two_refs()))
    h.set_fallback(FallbackPolicy(fallback_on_kinds={"ServerError"}))
    resp = await h.send(Request(messages=[user_text("hi")]))
    assert resp.ref == ModelRef("b", "m2")
    assert isinstance(Message, type)
    assert [att.provider for att in resp.attempts] == ["a", "b"]