from cortex_chat.ui.reducer import (
    FALLBACK_REPLY,
    ChatMessage,
    MessageSubmitted,
    ReplyRegenerated,
    StreamCancelled,
    StreamCompleted,
    StreamFailed,
    ThreadLoaded,
    TokenReceived,
    can_regenerate,
    reduce,
)


def _run(state, *events):
    for event in events:
        state = reduce(state, event)
    return state


def test_submit_and_stream_tokens():
    state = _run((), MessageSubmitted("Hello"), TokenReceived("Hi"), TokenReceived(" there"), TokenReceived("!"))
    state = reduce(state, StreamCompleted())
    assert state == (ChatMessage("user", "Hello"), ChatMessage("assistant", "Hi there!"))


def test_token_after_user_message_appends_new_assistant():
    state = (ChatMessage("user", "Hello"),)
    assert reduce(state, TokenReceived("Hi")) == (ChatMessage("user", "Hello"), ChatMessage("assistant", "Hi"))


def test_reducer_does_not_mutate_input():
    state = (ChatMessage("user", "Hello"), ChatMessage("assistant", ""))
    reduce(state, TokenReceived("Hi"))
    assert state[-1].content == ""


def test_error_after_partial_text_shows_fallback():
    state = _run((), MessageSubmitted("Tell me"), TokenReceived("Par"), StreamFailed("boom"))
    assert state[-1] == ChatMessage("assistant", FALLBACK_REPLY)
    assert len(state) == 2


def test_error_without_assistant_message_appends_fallback():
    state = (ChatMessage("user", "Hello"),)
    assert reduce(state, StreamFailed())[-1] == ChatMessage("assistant", FALLBACK_REPLY)


def test_empty_completion_shows_fallback():
    state = _run((), MessageSubmitted("Hello"), StreamCompleted())
    assert state[-1] == ChatMessage("assistant", FALLBACK_REPLY)


def test_cancel_before_tokens_removes_placeholder():
    state = _run((), MessageSubmitted("Hello"), StreamCancelled())
    assert state == (ChatMessage("user", "Hello"),)


def test_cancel_after_tokens_keeps_partial_text():
    state = _run((), MessageSubmitted("Hello"), TokenReceived("Par"), StreamCancelled())
    assert state[-1] == ChatMessage("assistant", "Par")


def test_regenerated_reply_replaces_or_appends():
    state = (ChatMessage("user", "Hi"), ChatMessage("assistant", "Hello!"))
    assert reduce(state, ReplyRegenerated("Hey!")) == (ChatMessage("user", "Hi"), ChatMessage("assistant", "Hey!"))
    assert reduce(state[:1], ReplyRegenerated("Hey!"))[-1] == ChatMessage("assistant", "Hey!")


def test_thread_loaded_replaces_local_state():
    state = _run((), MessageSubmitted("local"), TokenReceived("partial"))
    loaded = ThreadLoaded.from_payload([{"role": "user", "content": "Hi"}, {"role": "assistant", "content": None}])
    assert reduce(state, loaded) == (ChatMessage("user", "Hi"), ChatMessage("assistant", ""))


def test_can_regenerate():
    assert not can_regenerate(())
    assert not can_regenerate((ChatMessage("user", "Hi"),))
    assert can_regenerate((ChatMessage("user", "Hi"), ChatMessage("assistant", "Hello!")))
