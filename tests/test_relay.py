import asyncio

import pytest

from cortex_chat.services.errors import ChatValidationError, StorageError, ThreadNotFoundError
from cortex_chat.services.event_stream import done_frame, error_frame, token_frame
from cortex_chat.services.relay import (
    COMMIT_FAILED_MESSAGE,
    STREAM_FAILED_MESSAGE,
    StreamRelay,
    TurnState,
)
from cortex_chat.services.thread_store import ChatMessage, InMemoryThreadStore
from cortex_chat.services.observability import get_metric_snapshot

from support import FALLBACK, FlakyStore, ScriptedCompletion, StaticTitles, make_settings


def _relay(store, completion, **settings):
    return StreamRelay(store, completion, StaticTitles(), make_settings(**settings))


async def _drain_frames(relay, session):
    return [frame async for frame in relay.stream_turn(session)]


def _msgs(*pairs):
    return [ChatMessage(role=role, content=content) for role, content in pairs]


def test_hello_turn_streams_and_commits():
    async def _run():
        store = InMemoryThreadStore()
        completion = ScriptedCompletion(["Hi", " there", "!"])
        relay = _relay(store, completion)

        session = await relay.open_turn("t1", "Hello")
        frames = await _drain_frames(relay, session)

        assert frames == [token_frame("Hi"), token_frame(" there"), token_frame("!"), done_frame()]
        assert session.state == TurnState.DONE
        assert completion.calls == [_msgs(("user", "Hello"))]

        thread = await store.get_thread("t1")
        assert thread.title == "Greeting"
        assert thread.messages == _msgs(("user", "Hello"), ("assistant", "Hi there!"))

    asyncio.run(_run())


def test_existing_thread_keeps_title_and_history():
    async def _run():
        store = InMemoryThreadStore()
        await store.create_thread("t1", "Kept", _msgs(("user", "Hi"), ("assistant", "Hello!")))
        titles = StaticTitles("Should not be used")
        relay = StreamRelay(store, ScriptedCompletion(["Sure."]), titles, make_settings())

        session = await relay.open_turn("t1", "Again?")
        await _drain_frames(relay, session)

        thread = await store.get_thread("t1")
        assert thread.title == "Kept"
        assert [m.content for m in thread.messages] == ["Hi", "Hello!", "Again?", "Sure."]
        assert titles.seen == []

    asyncio.run(_run())


@pytest.mark.parametrize(
    "fragments",
    [["a"] * 40, ["多", "字节", " ✓"], ["line\n", "\n", "end"], ["x"]],
)
def test_committed_text_is_concatenation_of_fragments(fragments):
    async def _run():
        store = InMemoryThreadStore()
        relay = _relay(store, ScriptedCompletion(fragments))
        session = await relay.open_turn("t1", "go")
        frames = await _drain_frames(relay, session)

        assert frames[:-1] == [token_frame(f) for f in fragments]
        assert (await store.get_thread("t1")).messages[-1].content == "".join(fragments)

    asyncio.run(_run())


def test_upstream_error_after_partial_text_commits_partial():
    async def _run():
        store = InMemoryThreadStore()
        relay = _relay(store, ScriptedCompletion(["Par"], fail=True))
        session = await relay.open_turn("t1", "Tell me a story")
        frames = await _drain_frames(relay, session)

        assert frames == [token_frame("Par"), error_frame(STREAM_FAILED_MESSAGE)]
        assert session.state == TurnState.FAILED
        assert (await store.get_thread("t1")).messages[-1] == ChatMessage(role="assistant", content="Par")

    asyncio.run(_run())


def test_upstream_error_without_text_commits_fallback():
    async def _run():
        store = InMemoryThreadStore()
        relay = _relay(store, ScriptedCompletion([], fail=True))
        session = await relay.open_turn("t1", "Hello")
        frames = await _drain_frames(relay, session)

        assert frames == [error_frame(STREAM_FAILED_MESSAGE)]
        assert (await store.get_thread("t1")).messages == _msgs(("user", "Hello"), ("assistant", FALLBACK))

    asyncio.run(_run())


def test_cancel_before_any_fragment_commits_only_user_message():
    async def _run():
        store = InMemoryThreadStore()
        await store.create_thread("t1", "T", _msgs(("user", "Hi"), ("assistant", "Hello!")))
        gate = asyncio.Event()
        completion = ScriptedCompletion(["late"], gate=gate, gate_after=0)
        relay = _relay(store, completion, relay_continue_on_disconnect=False)

        session = await relay.open_turn("t1", "Second question")
        consumer = asyncio.create_task(_drain_frames(relay, session))
        await completion.started.wait()
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)
        await relay.drain()

        assert session.cancelled.is_set()
        assert (await store.get_thread("t1")).messages == _msgs(
            ("user", "Hi"), ("assistant", "Hello!"), ("user", "Second question")
        )

    asyncio.run(_run())


def test_cancel_after_partial_text_commits_partial_when_not_continuing():
    async def _run():
        store = InMemoryThreadStore()
        gate = asyncio.Event()
        completion = ScriptedCompletion(["Par", "tial"], gate=gate, gate_after=1)
        relay = _relay(store, completion, relay_continue_on_disconnect=False)
        session = await relay.open_turn("t1", "Hello")

        first_frame = asyncio.Event()
        received = []

        async def consume():
            async for frame in relay.stream_turn(session):
                received.append(frame)
                first_frame.set()

        consumer = asyncio.create_task(consume())
        await first_frame.wait()
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)
        await relay.drain()

        assert received == [token_frame("Par")]
        assert (await store.get_thread("t1")).messages == _msgs(("user", "Hello"), ("assistant", "Par"))

    asyncio.run(_run())


def test_disconnect_keeps_consuming_upstream_by_default():
    async def _run():
        store = InMemoryThreadStore()
        gate = asyncio.Event()
        completion = ScriptedCompletion(["Par", "tial", " answer"], gate=gate, gate_after=1)
        relay = _relay(store, completion)
        session = await relay.open_turn("t1", "Hello")

        first_frame = asyncio.Event()

        async def consume():
            async for _ in relay.stream_turn(session):
                first_frame.set()

        consumer = asyncio.create_task(consume())
        await first_frame.wait()
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)

        gate.set()
        await relay.drain()

        assert session.state == TurnState.DONE
        assert (await store.get_thread("t1")).messages[-1].content == "Partial answer"

    asyncio.run(_run())


def test_commit_is_retried_before_done():
    async def _run():
        store = FlakyStore(failures=2)
        relay = _relay(store, ScriptedCompletion(["ok"]), commit_max_attempts=3)
        session = await relay.open_turn("t1", "Hello")
        frames = await _drain_frames(relay, session)

        assert frames[-1] == done_frame()
        assert store.write_attempts == 3
        assert (await store.get_thread("t1")).messages[-1].content == "ok"

    asyncio.run(_run())


def test_commit_failure_becomes_terminal_error_frame():
    async def _run():
        store = FlakyStore(failures=10)
        relay = _relay(store, ScriptedCompletion(["ok"]), commit_max_attempts=2)
        session = await relay.open_turn("t1", "Hello")
        frames = await _drain_frames(relay, session)

        assert frames == [token_frame("ok"), error_frame(COMMIT_FAILED_MESSAGE)]
        assert store.write_attempts == 2
        assert session.state == TurnState.FAILED
        assert await store.get_thread("t1") is None
        assert get_metric_snapshot()["relay.turn.stream"]["failures"] == 1.0

    asyncio.run(_run())


def test_blocking_turn_returns_and_commits_reply():
    async def _run():
        store = InMemoryThreadStore()
        relay = _relay(store, ScriptedCompletion(reply="Hi there!"))
        session = await relay.open_turn("t1", "Hello")

        assert await relay.run_turn(session) == "Hi there!"
        assert (await store.get_thread("t1")).messages == _msgs(("user", "Hello"), ("assistant", "Hi there!"))

    asyncio.run(_run())


def test_blocking_turn_propagates_storage_failure():
    async def _run():
        relay = _relay(FlakyStore(failures=10), ScriptedCompletion(reply="Hi"), commit_max_attempts=2)
        session = await relay.open_turn("t1", "Hello")
        with pytest.raises(StorageError):
            await relay.run_turn(session)
        assert session.state == TurnState.FAILED

    asyncio.run(_run())


def test_regenerate_replaces_trailing_answer():
    async def _run():
        store = InMemoryThreadStore()
        await store.create_thread("t1", "T", _msgs(("user", "Hi"), ("assistant", "Hello!")))
        completion = ScriptedCompletion(reply="Hey!")
        relay = _relay(store, completion)

        session = await relay.open_regeneration("t1")
        assert await relay.run_turn(session) == "Hey!"

        assert completion.calls == [_msgs(("user", "Hi"))]
        assert (await store.get_thread("t1")).messages == _msgs(("user", "Hi"), ("assistant", "Hey!"))

    asyncio.run(_run())


def test_regenerate_streaming_keeps_message_count():
    async def _run():
        store = InMemoryThreadStore()
        await store.create_thread("t1", "T", _msgs(("user", "Hi"), ("assistant", "Hello!")))
        relay = _relay(store, ScriptedCompletion(["He", "y!"]))

        session = await relay.open_regeneration("t1")
        await _drain_frames(relay, session)

        assert (await store.get_thread("t1")).messages == _msgs(("user", "Hi"), ("assistant", "Hey!"))

    asyncio.run(_run())


def test_regenerate_on_user_terminated_thread_answers_it():
    async def _run():
        store = InMemoryThreadStore()
        await store.create_thread("t1", "T", _msgs(("user", "Hi")))
        relay = _relay(store, ScriptedCompletion(reply="Hello!"))

        session = await relay.open_regeneration("t1")
        await relay.run_turn(session)
        assert (await store.get_thread("t1")).messages == _msgs(("user", "Hi"), ("assistant", "Hello!"))

    asyncio.run(_run())


def test_regenerate_without_user_message_is_rejected_and_changes_nothing():
    async def _run():
        store = InMemoryThreadStore()
        await store.create_thread("t1", "T", _msgs(("assistant", "Welcome!")))
        completion = ScriptedCompletion(reply="unused")
        relay = _relay(store, completion)

        with pytest.raises(ChatValidationError):
            await relay.open_regeneration("t1")
        with pytest.raises(ThreadNotFoundError):
            await relay.open_regeneration("missing")

        assert completion.calls == []
        assert (await store.get_thread("t1")).messages == _msgs(("assistant", "Welcome!"))

    asyncio.run(_run())


@pytest.mark.parametrize("thread_id, message", [(None, "Hi"), ("t1", None), ("t1", "   "), ("", "Hi")])
def test_open_turn_validates_before_touching_anything(thread_id, message):
    async def _run():
        store = InMemoryThreadStore()
        completion = ScriptedCompletion(["x"])
        relay = _relay(store, completion)

        with pytest.raises(ChatValidationError) as excinfo:
            await relay.open_turn(thread_id, message)
        assert excinfo.value.message == "Thread ID and message are required"
        assert await store.list_threads() == []

    asyncio.run(_run())
