"""Shared fakes: an in-memory host and a scripted router."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Callable

import pytest

from deckhand.cancellation import CancelToken
from deckhand.config_loader import DeckhandConfig
from deckhand.governance import BoundaryEnforcer, VerifiedPath, WorkspaceRoot
from deckhand.router import BudgetTracker, RouterResponse
from deckhand.state import CostInfo
from deckhand.workspace.host import ProcessOutcome

ROOT = "/proj"


class MemoryHost:
    """HostBridge over a dict. Commands return scripted outcomes."""

    def __init__(self, root: str = ROOT):
        self.files: dict[str, str] = {}
        self.dirs: set[str] = {root}
        self.commands: list[str] = []
        self.outcomes: dict[str, tuple[int, str] | Callable[[CancelToken], tuple[int, str]]] = {}
        self.default_outcome: tuple[int, str] = (0, "")
        self.drop_writes = False
        self.truncate_writes = False
        self.killed = 0

    def _key(self, path: VerifiedPath) -> str:
        assert isinstance(path, VerifiedPath)
        return str(path.path)

    def read_text(self, path):
        try:
            return self.files[self._key(path)]
        except KeyError:
            raise FileNotFoundError(self._key(path)) from None

    def read_bytes(self, path):
        return self.read_text(path).encode("utf-8")

    def write_text(self, path, content, append=False):
        if self.drop_writes:
            return
        if self.truncate_writes:
            content = content[: len(content) // 2]
        key = self._key(path)
        self.files[key] = (self.files.get(key, "") if append else "") + content

    def make_dirs(self, path):
        current = PurePosixPath(self._key(path))
        for p in [current, *current.parents]:
            self.dirs.add(str(p))

    def exists(self, path):
        key = self._key(path)
        return key in self.files or key in self.dirs

    def size(self, path):
        return len(self.files[self._key(path)].encode("utf-8"))

    def list_dir(self, path):
        prefix = self._key(path).rstrip("/") + "/"
        names = {k[len(prefix):].split("/")[0] for k in [*self.files, *self.dirs] if k.startswith(prefix)}
        return sorted(names)

    def spawn(self, command, cwd):
        raise NotImplementedError

    def write_stdin(self, pid, data):
        raise NotImplementedError

    def wait(self, pid, token, timeout=None):
        raise NotImplementedError

    def kill(self, pid):
        self.killed += 1

    def kill_all(self):
        self.killed += 1

    def run(self, command, cwd, token, timeout=None):
        self.commands.append(command)
        scripted = self.outcomes.get(command, self.default_outcome)
        if callable(scripted):
            scripted = scripted(token)
        exit_code, output = scripted
        return ProcessOutcome(
            pid=len(self.commands),
            exit_code=exit_code,
            output=output,
            cancelled=token.cancelled,
        )


class ScriptedRouter:
    """Router stand-in returning canned replies in order."""

    def __init__(self, replies: list):
        self.replies = list(replies)
        self.requests: list[list[dict]] = []
        self.model = "test/model"
        self.budget = BudgetTracker()

    def start_run(self):
        self.budget.reset()

    def complete(self, messages, token):
        token.raise_if_cancelled()
        self.requests.append(messages)
        if not self.replies:
            raise AssertionError("router called more times than scripted")
        reply = self.replies.pop(0)
        if callable(reply):
            reply = reply(messages, token)
        if isinstance(reply, Exception):
            raise reply
        return RouterResponse(
            content=reply,
            model=self.model,
            cost=CostInfo(model=self.model, prompt_tokens=10, completion_tokens=5, cost=0.001),
        )


@pytest.fixture
def host() -> MemoryHost:
    return MemoryHost()


@pytest.fixture
def enforcer() -> BoundaryEnforcer:
    return BoundaryEnforcer(WorkspaceRoot.from_path(ROOT))


@pytest.fixture
def config() -> DeckhandConfig:
    cfg = DeckhandConfig()
    cfg.limits.retry_wait_min = 0
    cfg.limits.retry_wait_max = 0
    cfg.briefing.enabled = False
    return cfg
