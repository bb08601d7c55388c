"""
DECKHAND History — Conversation Persistence

One JSON file per conversation id. Writes are fire-and-forget: a failed
save is logged and never interrupts the run that produced the turn.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from deckhand.state import Conversation, ConversationTurn


class ConversationHistory:
    def __init__(self, history_dir: Path | str):
        self.history_dir = Path(history_dir).expanduser()

    def _path(self, conversation_id: str) -> Path:
        return self.history_dir / f"{conversation_id}.json"

    def save(self, conversation: Conversation) -> Path:
        self.history_dir.mkdir(parents=True, exist_ok=True)
        record = conversation.model_dump(mode="json")
        record["summary"] = {
            "title": conversation.title,
            "turns": len(conversation.turns),
            "total_tokens_in": conversation.tokens_in,
            "total_tokens_out": conversation.tokens_out,
            "total_cost": round(conversation.total_cost, 6),
        }
        path = self._path(conversation.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(record, indent=2), encoding="utf-8")
        tmp.replace(path)
        return path

    def record_turn(self, conversation: Conversation, turn: ConversationTurn | None = None) -> bool:
        """Persist the conversation after a turn. Returns False if the save failed."""
        try:
            self.save(conversation)
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"[HISTORY] Could not save conversation {conversation.id}: {e}")
            return False
        if turn is not None:
            logger.debug(f"[HISTORY] {conversation.id}: saved {turn.role} turn")
        return True

    def load(self, conversation_id: str) -> Conversation | None:
        path = self._path(conversation_id)
        if not path.exists():
            return None
        data = json.loads(path.read_text(encoding="utf-8"))
        data.pop("summary", None)
        return Conversation.model_validate(data)

    def list_threads(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Thread summaries, most recently updated first. Unreadable files are skipped."""
        threads = []
        if not self.history_dir.exists():
            return threads
        for path in self.history_dir.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"[HISTORY] Skipping {path.name}: {e}")
                continue
            summary = data.get("summary", {})
            threads.append({
                "id": data.get("id", path.stem),
                "title": summary.get("title") or data.get("title", ""),
                "created_at": data.get("created_at", ""),
                "updated_at": data.get("updated_at", ""),
                "workspace_path": data.get("workspace_path"),
                "model": data.get("model", ""),
                "turns": summary.get("turns", len(data.get("turns", []))),
                "total_tokens_in": summary.get("total_tokens_in", 0),
                "total_tokens_out": summary.get("total_tokens_out", 0),
                "total_cost": summary.get("total_cost", 0.0),
            })
        threads.sort(key=lambda t: t["updated_at"], reverse=True)
        return threads[:limit] if limit else threads

    def set_feedback(
        self,
        conversation_id: str,
        turn_index: int,
        value: Literal["up", "down"] | None,
    ) -> Conversation:
        if value not in ("up", "down", None):
            raise ValueError(f"Invalid feedback value {value!r}")
        conversation = self.load(conversation_id)
        if conversation is None:
            raise FileNotFoundError(f"No conversation {conversation_id} in {self.history_dir}")
        try:
            turn = conversation.turns[turn_index]
            conversation.turns[turn_index] = turn.model_copy(update={"feedback": value})
        except IndexError:
            raise IndexError(f"Conversation {conversation_id} has no turn {turn_index}") from None
        self.save(conversation)
        return conversation
