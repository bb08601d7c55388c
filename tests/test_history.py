import pytest

from deckhand.history import ConversationHistory
from deckhand.state import Conversation, ConversationTurn, CostInfo


def _conversation(text="fix the build") -> Conversation:
    conversation = Conversation(workspace_path="/proj", model="test/model")
    conversation.append(ConversationTurn(role="user", content=text))
    conversation.append(ConversationTurn(
        role="assistant",
        content="```bash\nnpm test\n```",
        cost=CostInfo(model="test/model", prompt_tokens=100, completion_tokens=20, cost=0.01),
    ))
    return conversation


def test_save_and_load(tmp_path):
    history = ConversationHistory(tmp_path)
    conversation = _conversation()
    conversation.briefing_sent = True

    history.save(conversation)
    loaded = history.load(conversation.id)

    assert loaded.id == conversation.id
    assert loaded.title == "fix the build"
    assert [t.role for t in loaded.turns] == ["user", "assistant"]
    assert loaded.briefing_sent
    assert loaded.total_cost == pytest.approx(0.01)


def test_load_missing_returns_none(tmp_path):
    assert ConversationHistory(tmp_path).load("nope") is None


def test_list_threads_newest_first(tmp_path):
    history = ConversationHistory(tmp_path)
    older = _conversation("first")
    newer = _conversation("second")
    older.updated_at = "2024-01-01T00:00:00+00:00"
    newer.updated_at = "2024-06-01T00:00:00+00:00"
    history.save(older)
    history.save(newer)

    threads = history.list_threads()

    assert [t["title"] for t in threads] == ["second", "first"]
    assert threads[0]["total_tokens_in"] == 100
    assert len(history.list_threads(limit=1)) == 1


def test_unreadable_thread_is_skipped(tmp_path):
    history = ConversationHistory(tmp_path)
    history.save(_conversation())
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    assert len(history.list_threads()) == 1


def test_record_turn_failure_does_not_raise(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    history = ConversationHistory(blocker / "history")

    assert history.record_turn(_conversation()) is False


def test_set_feedback(tmp_path):
    history = ConversationHistory(tmp_path)
    conversation = _conversation()
    history.save(conversation)

    updated = history.set_feedback(conversation.id, 1, "up")

    assert updated.turns[1].feedback == "up"
    assert history.load(conversation.id).turns[1].feedback == "up"
    assert history.set_feedback(conversation.id, 1, None).turns[1].feedback is None


def test_set_feedback_rejects_bad_input(tmp_path):
    history = ConversationHistory(tmp_path)
    conversation = _conversation()
    history.save(conversation)

    with pytest.raises(ValueError):
        history.set_feedback(conversation.id, 1, "sideways")
    with pytest.raises(IndexError):
        history.set_feedback(conversation.id, 9, "down")
    with pytest.raises(FileNotFoundError):
        history.set_feedback("missing", 0, "down")
