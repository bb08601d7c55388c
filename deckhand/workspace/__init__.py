"""
DECKHAND Workspace Session

Owns the single WorkspaceRoot of an app session. The folder is opened by
explicit user action and replaced only through change_folder(), which is
refused while a run holds the session. Runs never read the live root:
they take a BoundaryEnforcer snapshot at start.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from loguru import logger

from deckhand.errors import DeckhandError
from deckhand.governance import BoundaryEnforcer, WorkspaceRoot


class WorkspaceError(DeckhandError):
    code = "WORKSPACE"


class WorkspaceSession:
    def __init__(self, root: WorkspaceRoot | None = None):
        self._root = root or WorkspaceRoot()
        self._lock = threading.Lock()
        self._active_runs = 0

    @property
    def root(self) -> WorkspaceRoot:
        return self._root

    @property
    def busy(self) -> bool:
        return self._active_runs > 0

    def open_folder(self, path: str | Path) -> WorkspaceRoot:
        """Set the root once. Use change_folder() to replace it."""
        with self._lock:
            if self._root.is_set:
                raise WorkspaceError(
                    f"Workspace already open at {self._root}; use change_folder()"
                )
            self._root = self._validated(path)
        logger.info(f"[WORKSPACE] Opened {self._root}")
        return self._root

    def change_folder(self, path: str | Path | None) -> WorkspaceRoot:
        """Replace or clear (path=None) the root between runs."""
        with self._lock:
            if self._active_runs:
                raise WorkspaceError("Cannot change folder while a run is in progress")
            self._root = self._validated(path) if path else WorkspaceRoot()
        logger.info(f"[WORKSPACE] Folder changed to {self._root or '(none)'}")
        return self._root

    def snapshot(self) -> BoundaryEnforcer:
        return BoundaryEnforcer(self._root)

    @contextmanager
    def active_run(self) -> Iterator[BoundaryEnforcer]:
        """Pin the root for the duration of a run."""
        with self._lock:
            self._active_runs += 1
            enforcer = BoundaryEnforcer(self._root)
        try:
            yield enforcer
        finally:
            with self._lock:
                self._active_runs -= 1

    @staticmethod
    def _validated(path: str | Path) -> WorkspaceRoot:
        root = WorkspaceRoot.from_path(path)
        if not root.is_set or not root.path.is_dir():
            raise WorkspaceError(f"Not a directory: {path}")
        return root
