import pytest

from deckhand.context_window import (
    TRUNCATION_SUFFIX,
    ContextWindowManager,
    PayloadTooLargeError,
    estimate_tokens,
)
from deckhand.router import UpstreamErrorKind
from deckhand.state import Attachment, Conversation, ConversationTurn


def _conversation(*contents: str) -> Conversation:
    conversation = Conversation()
    for i, content in enumerate(contents):
        conversation.append(ConversationTurn(role="user" if i % 2 == 0 else "assistant", content=content))
    return conversation


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("", 3.5) == 0
    assert estimate_tokens("abcd", 3.5) == 2


def test_everything_fits():
    manager = ContextWindowManager()
    request = manager.build(_conversation("hi", "hello", "do it"), "system")

    assert [m["role"] for m in request.messages] == ["system", "user", "assistant", "user"]
    assert request.turn_indices == [0, 1, 2]
    assert request.dropped_turns == 0


def test_sliding_window_drops_oldest_but_keeps_current_user_turn():
    manager = ContextWindowManager(max_context_tokens=100, chars_per_token=1)
    conversation = _conversation("a" * 60, "b" * 60, "c" * 60, "d" * 60, "latest")

    request = manager.build(conversation, "sys")

    assert request.turn_indices[-1] == 4
    assert request.messages[-1]["content"] == "latest"
    assert 0 not in request.turn_indices
    assert request.dropped_turns >= 1
    # never starts with an assistant turn
    assert request.messages[1]["role"] == "user"


def test_current_turn_kept_even_when_over_budget():
    manager = ContextWindowManager(max_context_tokens=5, chars_per_token=1)
    request = manager.build(_conversation("old", "reply", "x" * 500), "sys")
    assert request.turn_indices == [2]


def test_turns_after_current_user_turn_are_not_sent():
    conversation = _conversation("go", "working")
    request = ContextWindowManager().build(conversation, "sys")
    assert request.turn_indices == [0]


def test_no_user_turn_is_an_error():
    with pytest.raises(ValueError):
        ContextWindowManager().build(Conversation(), "sys")


def test_briefing_sent_exactly_once():
    manager = ContextWindowManager()
    conversation = _conversation("first")

    first = manager.build(conversation, "sys", briefing="# Handoff\nuse pnpm")
    second = manager.build(conversation, "sys", briefing="# Handoff\nuse pnpm")

    assert first.briefing_included
    assert "use pnpm" in first.messages[0]["content"]
    assert conversation.briefing_sent
    assert not second.briefing_included
    assert "use pnpm" not in second.messages[0]["content"]


def test_byte_guard_strips_images_from_earlier_turns():
    image = Attachment(name="shot.png", mime_type="image/png", data="A" * 5000)
    conversation = Conversation()
    conversation.append(ConversationTurn(role="user", content="look", attachments=[image]))
    conversation.append(ConversationTurn(role="assistant", content="seen"))
    conversation.append(ConversationTurn(role="user", content="now fix it"))

    request = ContextWindowManager(max_payload_bytes=2000).build(conversation, "sys")

    assert request.payload_bytes <= 2000
    assert "stripped images from earlier turns" in request.notes
    assert "image(s) omitted" in request.messages[1]["content"]


def test_byte_guard_truncates_old_turns():
    conversation = _conversation("x" * 3000, "y" * 3000, "current")

    request = ContextWindowManager(max_payload_bytes=5000, old_message_chars=1000).build(conversation, "sys")

    assert request.turn_indices == [0, 1, 2]
    assert request.messages[1]["content"].endswith(TRUNCATION_SUFFIX)
    assert request.messages[-1]["content"] == "current"


def test_byte_guard_drops_turns_when_truncation_is_not_enough():
    conversation = _conversation(*(["z" * 3000, "w" * 3000] * 3), "current")

    request = ContextWindowManager(max_payload_bytes=3000, old_message_chars=1000).build(conversation, "sys")

    assert request.turn_indices[-1] == 6
    assert request.dropped_turns > 0
    assert request.payload_bytes <= 3000


def test_byte_guard_gives_up_with_payload_too_large():
    conversation = Conversation()
    conversation.append(ConversationTurn(role="user", content="q" * 10_000))
    manager = ContextWindowManager(max_payload_bytes=1000)

    with pytest.raises(PayloadTooLargeError) as exc:
        manager.build(conversation, "sys", briefing="brief")

    assert exc.value.kind is UpstreamErrorKind.PAYLOAD_TOO_LARGE
    assert exc.value.status_code == 413
    assert not conversation.briefing_sent
