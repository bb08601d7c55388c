"""
DECKHAND error base.

Concrete errors live next to the code that raises them. They share this
base so every failure can be rendered as marked transcript text that
neither a human nor the model can mistake for a success.
"""

from __future__ import annotations

FAILURE_MARKER = "[ERROR]"


class DeckhandError(Exception):
    """Base class for all pipeline failures."""

    code: str = "DECKHAND_ERROR"

    def to_marked_text(self) -> str:
        return f"{FAILURE_MARKER} {self.code}: {self}"


def is_marked_failure(text: str) -> bool:
    """True when a transcript line was produced by a pipeline failure."""
    return text.lstrip().startswith(FAILURE_MARKER)
