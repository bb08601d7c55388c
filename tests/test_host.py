import threading

import pytest

from deckhand.cancellation import CancelToken
from deckhand.governance import BoundaryEnforcer, WorkspaceRoot
from deckhand.workspace.host import (
    CANCELLED_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    LocalHost,
    truncate_output,
)


@pytest.fixture
def local(tmp_path):
    return LocalHost(kill_grace_seconds=1.0, poll_interval=0.02), BoundaryEnforcer(WorkspaceRoot.from_path(tmp_path))


def test_run_captures_output_and_exit_code(local):
    host, enforcer = local
    outcome = host.run("echo hello && exit 3", enforcer.resolve("."), CancelToken())
    assert "hello" in outcome.output
    assert outcome.exit_code == 3
    assert not outcome.cancelled


def test_run_uses_workspace_as_cwd(local, tmp_path):
    host, enforcer = local
    outcome = host.run("pwd", enforcer.resolve("."), CancelToken())
    assert outcome.output.strip().endswith(tmp_path.name)


def test_timeout_terminates_process(local):
    host, enforcer = local
    outcome = host.run("sleep 10", enforcer.resolve("."), CancelToken(), timeout=0.2)
    assert outcome.timed_out
    assert outcome.exit_code == TIMEOUT_EXIT_CODE
    assert outcome.elapsed < 5


def test_cancel_terminates_process(local):
    host, enforcer = local
    token = CancelToken()
    threading.Timer(0.2, token.cancel).start()

    outcome = host.run("sleep 10", enforcer.resolve("."), token)

    assert outcome.cancelled
    assert outcome.exit_code == CANCELLED_EXIT_CODE


def test_file_roundtrip_and_append(local):
    host, enforcer = local
    path = enforcer.resolve("notes/a.txt")
    host.make_dirs(path.parent)
    host.write_text(path, "one\n")
    host.write_text(path, "two\n", append=True)
    assert host.read_text(path) == "one\ntwo\n"
    assert host.size(path) == 8
    assert host.list_dir(enforcer.resolve(".")) == ["notes/"]


def test_plain_string_paths_are_rejected(local, tmp_path):
    host, _ = local
    with pytest.raises(TypeError, match="VerifiedPath"):
        host.read_text(str(tmp_path / "a.txt"))
    with pytest.raises(TypeError):
        host.spawn("ls", str(tmp_path))


def test_truncate_output_keeps_head_and_tail():
    text = "a" * 50 + "b" * 50
    out = truncate_output(text, 20)
    assert out.startswith("a" * 10)
    assert out.endswith("b" * 10)
    assert "80 characters omitted" in out
    assert truncate_output("short", 20) == "short"
