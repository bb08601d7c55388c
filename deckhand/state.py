"""
DECKHAND Conversation State

Pydantic models for what a run reads and writes: turns, attachments,
per-unit execution results, and the per-response verdict.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from deckhand.errors import DeckhandError, is_marked_failure
from deckhand.extractor import ExecutableUnit


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BriefingAlreadySentError(DeckhandError):
    code = "BRIEFING_ALREADY_SENT"


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------

class Attachment(BaseModel):
    """A file or image the user attached to a turn. Images carry base64 data."""
    name: str
    mime_type: str = "text/plain"
    text: str | None = None
    data: str | None = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/") and bool(self.data)

    def to_content_part(self) -> dict:
        if self.is_image:
            return {
                "type": "image_url",
                "image_url": {"url": f"data:{self.mime_type};base64,{self.data}"},
            }
        return {"type": "text", "text": f"--- {self.name} ---\n{self.text or ''}"}


class CostInfo(BaseModel):
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0


class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    attachments: list[Attachment] = Field(default_factory=list)
    cost: CostInfo | None = None
    is_error: bool = False
    feedback: Literal["up", "down"] | None = None
    timestamp: str = Field(default_factory=_now)


class Conversation(BaseModel):
    """
    Append-only sequence of turns for one thread.

    `iteration` counts model requests in the current run and is reset by
    `begin_run()`. `briefing_sent` flips false -> true exactly once.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    title: str = ""
    workspace_path: str | None = None
    model: str = ""
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)
    turns: list[ConversationTurn] = Field(default_factory=list)
    iteration: int = 0
    briefing_sent: bool = False

    def append(self, turn: ConversationTurn) -> ConversationTurn:
        self.turns.append(turn)
        self.updated_at = turn.timestamp
        if not self.title and turn.role == "user":
            self.title = turn.content.strip().splitlines()[0][:60] if turn.content.strip() else "Untitled"
        return turn

    def begin_run(self) -> None:
        self.iteration = 0

    def next_iteration(self) -> int:
        self.iteration += 1
        return self.iteration

    def mark_briefing_sent(self) -> None:
        if self.briefing_sent:
            raise BriefingAlreadySentError(
                f"Briefing was already sent for conversation {self.id}"
            )
        self.briefing_sent = True

    def last_user_index(self) -> int | None:
        for index in range(len(self.turns) - 1, -1, -1):
            if self.turns[index].role == "user":
                return index
        return None

    @property
    def tokens_in(self) -> int:
        return sum(t.cost.prompt_tokens for t in self.turns if t.cost)

    @property
    def tokens_out(self) -> int:
        return sum(t.cost.completion_tokens for t in self.turns if t.cost)

    @property
    def total_cost(self) -> float:
        return sum(t.cost.cost for t in self.turns if t.cost)


# ---------------------------------------------------------------------------
# Execution results
# ---------------------------------------------------------------------------

class RunOutcome(str, Enum):
    COMPLETED = "completed"
    ITERATION_LIMIT = "iteration_limit"
    STOPPED_BY_USER = "stopped_by_user"
    TIMED_OUT = "timed_out"
    UPSTREAM_ERROR = "upstream_error"
    BUDGET_EXCEEDED = "budget_exceeded"


class Verdict(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAIL = "fail"


class ExecutionResult(BaseModel):
    unit: ExecutableUnit
    exit_code: int
    output: str = ""
    elapsed: float = 0.0
    tag: str = "unknown"
    kind: Literal["shell", "write", "refused"] = "shell"
    prerequisite: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not is_marked_failure(self.output)

    def render(self) -> str:
        head = f"$ {self.unit.text}" if not self.unit.is_heredoc else f"$ {self.unit.opener} ..."
        status = "ok" if self.ok else f"exit {self.exit_code}"
        body = self.output.rstrip() or "(no output)"
        return f"{head}\n[{status}, {self.elapsed:.2f}s]\n{body}"


class TurnResult(BaseModel):
    """All results for one run, plus how the run ended."""
    results: list[ExecutionResult] = Field(default_factory=list)
    outcome: RunOutcome = RunOutcome.COMPLETED
    iterations: int = 0
    message: str = ""

    @property
    def verdict(self) -> Verdict:
        if self.outcome is not RunOutcome.COMPLETED:
            return Verdict.FAIL
        primary = [r for r in self.results if not r.prerequisite]
        if not primary or all(r.ok for r in primary):
            return Verdict.SUCCESS
        if any(r.ok for r in primary):
            return Verdict.PARTIAL
        return Verdict.FAIL
