"""
DECKHAND Context Window Manager

Decides which turns go out with the next request. Two independent guards:

  * token estimate (characters / chars_per_token) trimmed by a sliding
    window over the oldest non-essential turns;
  * serialized payload bytes, the hard backstop against the gateway's
    body-size limit, which strips images, shortens old turns, and drops
    more history before giving up with PayloadTooLargeError.

Essential content is never dropped: the system message and the most
recent user turn.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field

from loguru import logger

from deckhand.router import UpstreamError, UpstreamErrorKind
from deckhand.state import Conversation, ConversationTurn

TRUNCATION_SUFFIX = "\n[truncated for context length]"


class PayloadTooLargeError(UpstreamError):
    def __init__(self, message: str):
        super().__init__(UpstreamErrorKind.PAYLOAD_TOO_LARGE, message, status_code=413)


def estimate_tokens(text: str, chars_per_token: float = 3.5) -> int:
    return math.ceil(len(text) / chars_per_token) if text else 0


@dataclass
class OutgoingRequest:
    messages: list[dict]
    turn_indices: list[int]
    estimated_tokens: int
    payload_bytes: int
    briefing_included: bool = False
    dropped_turns: int = 0
    notes: list[str] = field(default_factory=list)


@dataclass
class _Slot:
    index: int
    turn: ConversationTurn
    text: str
    images: bool = True


class ContextWindowManager:
    def __init__(
        self,
        max_context_tokens: int = 40_000,
        chars_per_token: float = 3.5,
        max_payload_bytes: int = 900 * 1024,
        old_message_chars: int = 2000,
    ):
        self.max_context_tokens = max_context_tokens
        self.chars_per_token = chars_per_token
        self.max_payload_bytes = max_payload_bytes
        self.old_message_chars = old_message_chars

    @classmethod
    def from_config(cls, limits) -> "ContextWindowManager":
        return cls(
            max_context_tokens=limits.max_context_tokens,
            chars_per_token=limits.chars_per_token,
            max_payload_bytes=limits.max_payload_bytes,
            old_message_chars=limits.old_message_chars,
        )

    # --- Public API --------------------------------------------------------

    def build(
        self,
        conversation: Conversation,
        system_prompt: str,
        briefing: str | None = None,
    ) -> OutgoingRequest:
        """
        Select turns for the next request.

        The briefing is attached only while conversation.briefing_sent is
        false, and the flag is set as soon as it is included.
        """
        current = conversation.last_user_index()
        if current is None:
            raise ValueError("conversation has no user turn to send")

        include_briefing = bool(briefing) and not conversation.briefing_sent
        system = system_prompt
        if include_briefing:
            system = f"{system_prompt}\n\n# Project handoff / documentation\n\n{briefing}"

        slots = [_Slot(i, t, t.content) for i, t in enumerate(conversation.turns) if i <= current]
        dropped = self._apply_token_window(slots, system, current)
        self._drop_leading_assistant(slots, current)

        messages = self._render(system, slots)
        size = self._payload_size(messages)
        notes: list[str] = []
        if size > self.max_payload_bytes:
            messages, size, extra = self._apply_byte_guard(system, slots, current, notes)
            dropped += extra

        if include_briefing:
            conversation.mark_briefing_sent()
            logger.info(f"[CONTEXT] Briefing included ({estimate_tokens(briefing, self.chars_per_token)} est. tokens)")

        tokens = self._estimate(system, slots)
        logger.debug(
            f"[CONTEXT] {len(slots)} turn(s), ~{tokens} tokens, {size} bytes, dropped {dropped}"
        )
        return OutgoingRequest(
            messages=messages,
            turn_indices=[s.index for s in slots],
            estimated_tokens=tokens,
            payload_bytes=size,
            briefing_included=include_briefing,
            dropped_turns=dropped,
            notes=notes,
        )

    # --- Token guard -------------------------------------------------------

    def _turn_tokens(self, slot: _Slot) -> int:
        extra = sum(len(a.text or "") for a in slot.turn.attachments)
        return estimate_tokens(slot.text, self.chars_per_token) + math.ceil(extra / self.chars_per_token)

    def _estimate(self, system: str, slots: list[_Slot]) -> int:
        return estimate_tokens(system, self.chars_per_token) + sum(self._turn_tokens(s) for s in slots)

    def _apply_token_window(self, slots: list[_Slot], system: str, current: int) -> int:
        dropped = 0
        while self._estimate(system, slots) > self.max_context_tokens:
            victim = self._oldest_droppable(slots, current)
            if victim is None:
                logger.warning("[CONTEXT] Only essential turns left; sending over token budget")
                break
            slots.remove(victim)
            dropped += 1
        return dropped

    @staticmethod
    def _oldest_droppable(slots: list[_Slot], current: int) -> _Slot | None:
        for slot in slots:
            if slot.index != current:
                return slot
        return None

    @staticmethod
    def _drop_leading_assistant(slots: list[_Slot], current: int) -> None:
        while slots and slots[0].turn.role == "assistant" and slots[0].index != current:
            slots.pop(0)

    # --- Byte guard --------------------------------------------------------

    def _apply_byte_guard(
        self, system: str, slots: list[_Slot], current: int, notes: list[str]
    ) -> tuple[list[dict], int, int]:
        for slot in slots:
            if slot.index != current and slot.images:
                slot.images = False
        messages = self._render(system, slots)
        size = self._payload_size(messages)
        notes.append("stripped images from earlier turns")
        if size <= self.max_payload_bytes:
            return messages, size, 0

        for slot in slots:
            if slot.index != current and len(slot.text) > self.old_message_chars:
                slot.text = slot.text[: self.old_message_chars] + TRUNCATION_SUFFIX
        messages = self._render(system, slots)
        size = self._payload_size(messages)
        notes.append("shortened earlier turns")

        dropped = 0
        while size > self.max_payload_bytes:
            victim = self._oldest_droppable(slots, current)
            if victim is None:
                logger.error(f"[CONTEXT] Payload {size} bytes exceeds {self.max_payload_bytes} with essentials only")
                raise PayloadTooLargeError(
                    f"Request is {size} bytes with only the current message left "
                    f"(limit {self.max_payload_bytes}). Remove or shrink attachments."
                )
            slots.remove(victim)
            self._drop_leading_assistant(slots, current)
            dropped += 1
            messages = self._render(system, slots)
            size = self._payload_size(messages)

        if dropped:
            notes.append(f"dropped {dropped} earlier turn(s)")
        logger.warning(f"[CONTEXT] Byte guard applied: {', '.join(notes)} ({size} bytes)")
        return messages, size, dropped

    # --- Rendering ---------------------------------------------------------

    @staticmethod
    def _render(system: str, slots: list[_Slot]) -> list[dict]:
        messages: list[dict] = [{"role": "system", "content": system}]
        for slot in slots:
            attachments = slot.turn.attachments
            if not slot.images:
                attachments = [a for a in attachments if not a.is_image]
            omitted = len(slot.turn.attachments) - len(attachments)
            text = slot.text
            if omitted:
                text = f"{text}\n[{omitted} image(s) omitted for context length]"
            if attachments:
                parts = [{"type": "text", "text": text}]
                parts.extend(a.to_content_part() for a in attachments)
                messages.append({"role": slot.turn.role, "content": parts})
            else:
                messages.append({"role": slot.turn.role, "content": text})
        return messages

    @staticmethod
    def _payload_size(messages: list[dict]) -> int:
        return len(json.dumps(messages).encode("utf-8"))
