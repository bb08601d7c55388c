"""
DECKHAND Governance — Workspace Boundary Enforcement

Every path the pipeline touches goes through BoundaryEnforcer.resolve().
The check is lexical: join onto the workspace root, normalize, and require
the result to be the root or below it. Nothing here touches the disk.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from loguru import logger

from deckhand.errors import DeckhandError


class BoundaryViolation(DeckhandError):
    code = "BOUNDARY_VIOLATION"


class NoWorkspaceError(BoundaryViolation):
    code = "NO_WORKSPACE"

    def __init__(self, message: str = "No workspace folder is open. Open a folder first."):
        super().__init__(message)


class OutsideWorkspaceError(BoundaryViolation):
    code = "OUTSIDE_WORKSPACE"


@dataclass(frozen=True)
class WorkspaceRoot:
    """Absolute, normalized workspace directory, or None when no folder is open."""
    path: Path | None = None

    @classmethod
    def from_path(cls, raw: str | os.PathLike | None) -> "WorkspaceRoot":
        if raw is None or not str(raw).strip():
            return cls()
        expanded = os.path.expanduser(str(raw).strip())
        return cls(path=Path(os.path.normpath(os.path.abspath(expanded))))

    @property
    def is_set(self) -> bool:
        return self.path is not None

    def __str__(self) -> str:
        return str(self.path) if self.path else ""


@dataclass(frozen=True)
class VerifiedPath:
    """
    A path already checked against a workspace root.

    Only BoundaryEnforcer should construct these. Host operations accept
    nothing else.
    """
    path: Path
    root: Path

    @property
    def relative(self) -> str:
        rel = self.path.relative_to(self.root)
        return str(PurePosixPath(*rel.parts)) if rel.parts else "."

    @property
    def parent(self) -> "VerifiedPath":
        if self.path == self.root:
            return self
        return VerifiedPath(path=self.path.parent, root=self.root)

    def __fspath__(self) -> str:
        return str(self.path)

    def __str__(self) -> str:
        return str(self.path)


class BoundaryEnforcer:
    """Resolves candidate paths against one captured WorkspaceRoot."""

    def __init__(self, root: WorkspaceRoot):
        self.root = root

    def resolve(self, candidate: str | os.PathLike) -> VerifiedPath:
        if not self.root.is_set:
            raise NoWorkspaceError()

        root = self.root.path
        raw = os.fspath(candidate).strip()
        if raw.startswith("~"):
            raw = os.path.expanduser(raw)

        # os.path.join keeps an absolute candidate as-is; the prefix check below decides.
        joined = os.path.normpath(os.path.join(str(root), raw or "."))
        resolved = Path(joined)

        if resolved != root and root not in resolved.parents:
            logger.warning(f"[BOUNDARY] Refused {raw!r}: outside {root}")
            raise OutsideWorkspaceError(
                f"{raw!r} resolves to {resolved}, which is outside the workspace {root}"
            )

        return VerifiedPath(path=resolved, root=root)

    def contains(self, candidate: str | os.PathLike) -> bool:
        try:
            self.resolve(candidate)
        except BoundaryViolation:
            return False
        return True
