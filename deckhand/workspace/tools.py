"""
DECKHAND Tool Executor

Runs one ExecutableUnit against the workspace and returns an
ExecutionResult. Heredoc file writes are performed directly through the
FileOperationVerifier; everything else is spawned through the host with
the workspace root as cwd, after its `cd` and redirection targets have
been checked against the boundary.
"""

from __future__ import annotations

import base64
import mimetypes
import os
import re
import shlex
import time

from loguru import logger

from deckhand.cancellation import CancelToken, RunCancelled
from deckhand.errors import DeckhandError
from deckhand.extractor import ExecutableUnit, UnresolvedHeredocError
from deckhand.governance import BoundaryEnforcer, OutsideWorkspaceError, VerifiedPath
from deckhand.state import Attachment, ExecutionResult
from deckhand.verifier import FileOperationVerifier, WriteVerificationFailed
from deckhand.workspace.host import HostBridge

REFUSED_EXIT_CODE = 126

_FILE_WRITE = re.compile(
    r"""^(?:mkdir\s+-p\s+(?P<dir>"[^"]+"|'[^']+'|\S+)\s*&&\s*)?"""
    r"""cat\s*(?P<op>>>|>)\s*(?P<path>"[^"]+"|'[^']+'|[^\s<]+)\s*"""
    r"""<<(?P<dash>-?)\s*(?P<q>['"]?)(?P<delim>\w+)(?P=q)\s*$"""
)
_SEGMENT_SPLIT = re.compile(r"\s*(?:&&|\|\||;|\|)\s*")
_REDIRECT = re.compile(r"(?<![<>&\d])\d?>>?\s*(?P<target>[^\s;&|<>]+)")
_INPUT_REDIRECT = re.compile(r"(?<![<\d])<(?![<(])\s*(?P<target>[^\s;&|<>]+)")
_HEREDOC_TAIL = re.compile(r"""<<-?\s*(['"]?)\w+\1\s*$""")
_FILE_COMMANDS = {"rm", "rmdir", "mkdir", "touch", "cp", "mv", "ln", "chmod", "chown"}
_READ_COMMANDS = {
    "cat", "ls", "head", "tail", "less", "more", "wc", "stat", "file", "du", "tree",
    "find", "diff", "sort", "uniq", "cut", "tee", "source", ".", "realpath", "readlink",
}
# First operand is a pattern or program, not a path.
_PATTERN_COMMANDS = {"grep", "egrep", "fgrep", "rg", "sed", "awk"}
_UNVERIFIABLE = ("$", "`")
_NULL_DEVICES = {"/dev/null", "/dev/stdout", "/dev/stderr"}


class ToolViolationError(DeckhandError):
    code = "TOOL_VIOLATION"


class CommandTimedOut(ToolViolationError):
    code = "COMMAND_TIMED_OUT"


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _require_literal(raw: str) -> None:
    if any(c in raw for c in _UNVERIFIABLE):
        raise OutsideWorkspaceError(f"cannot verify path {raw!r} (shell expansion)")


def _words(segment: str) -> list[str]:
    try:
        return shlex.split(segment)
    except ValueError:
        # Unbalanced quotes; shell would reject it too, so a rough split is enough.
        return segment.split()


class ToolExecutor:
    def __init__(
        self,
        host: HostBridge,
        enforcer: BoundaryEnforcer,
        verifier: FileOperationVerifier | None = None,
        command_timeout: float | None = 300.0,
    ):
        self.host = host
        self.enforcer = enforcer
        self.verifier = verifier or FileOperationVerifier(host)
        self.command_timeout = command_timeout

    # --- Public API --------------------------------------------------------

    def execute(self, unit: ExecutableUnit, token: CancelToken, tag: str = "unknown",
                prerequisite: bool = False) -> ExecutionResult:
        start = time.monotonic()
        kind = "shell"
        try:
            if unit.is_heredoc and not unit.terminated:
                raise UnresolvedHeredocError(
                    f"no line equal to '{unit.delimiter}' closes the heredoc; re-send the complete block"
                )
            write = _FILE_WRITE.match(unit.opener) if unit.is_heredoc else None
            if write and (write.group("q") or not any(c in unit.body_text for c in _UNVERIFIABLE)):
                kind = "write"
                exit_code, output = self._write_heredoc(unit, write)
            else:
                exit_code, output = self._run_shell(unit, token)
        except RunCancelled:
            raise
        except WriteVerificationFailed as e:
            logger.error(f"[VERIFY] {e.to_marked_text()}")
            exit_code, output = 1, e.to_marked_text()
        except DeckhandError as e:
            logger.warning(f"[HOST] Refused: {e.to_marked_text()}")
            kind, exit_code, output = "refused", REFUSED_EXIT_CODE, e.to_marked_text()

        return ExecutionResult(
            unit=unit,
            exit_code=exit_code,
            output=output,
            elapsed=time.monotonic() - start,
            tag=tag,
            kind=kind,
            prerequisite=prerequisite,
        )

    def read_file(self, path: str) -> str:
        return self.host.read_text(self.enforcer.resolve(path))

    def list_dir(self, path: str = ".") -> list[str]:
        return self.host.list_dir(self.enforcer.resolve(path))

    def exists(self, path: str) -> bool:
        return self.host.exists(self.enforcer.resolve(path))

    def load_attachment(self, path: str) -> Attachment:
        target = self.enforcer.resolve(path)
        mime_type = mimetypes.guess_type(target.path.name)[0] or "text/plain"
        if mime_type.startswith("image/"):
            data = base64.b64encode(self.host.read_bytes(target)).decode("ascii")
            return Attachment(name=target.relative, mime_type=mime_type, data=data)
        return Attachment(name=target.relative, mime_type=mime_type, text=self.host.read_text(target))

    # --- Heredoc writes ----------------------------------------------------

    def _write_heredoc(self, unit: ExecutableUnit, match: re.Match) -> tuple[int, str]:
        messages = []
        for raw in (match.group("dir"), match.group("path")):
            if raw:
                _require_literal(_unquote(raw))
        if match.group("dir"):
            directory = self.verifier.ensure_dir(self.enforcer.resolve(_unquote(match.group("dir"))))
            messages.append(f"Directory ready: {directory.relative}")

        target = self.enforcer.resolve(_unquote(match.group("path")))
        body = unit.body_text
        if match.group("dash"):
            body = "".join(line.lstrip("\t") for line in body.splitlines(keepends=True))
        if not self.host.exists(target.parent):
            self.verifier.ensure_dir(target.parent)

        receipt = self.verifier.write(target, body, append=match.group("op") == ">>")
        messages.append(receipt.describe())
        logger.info(f"[VERIFY] {receipt.describe()}")
        return 0, "\n".join(messages)

    # --- Shell commands ----------------------------------------------------

    def _run_shell(self, unit: ExecutableUnit, token: CancelToken) -> tuple[int, str]:
        self.check_paths(unit.opener if unit.is_heredoc else unit.text)
        token.raise_if_cancelled()

        cwd = self.enforcer.resolve(".")
        outcome = self.host.run(unit.text, cwd, token, timeout=self.command_timeout)
        logger.debug(f"[HOST] exit {outcome.exit_code} in {outcome.elapsed:.2f}s: {unit.opener[:80]}")

        if outcome.cancelled:
            token.raise_if_cancelled()
        if outcome.timed_out:
            failure = CommandTimedOut(f"command exceeded {self.command_timeout:.0f}s and was terminated")
            return outcome.exit_code, f"{failure.to_marked_text()}\n{outcome.output}"
        return outcome.exit_code, outcome.output

    def check_paths(self, command: str) -> list[VerifiedPath]:
        """
        Resolve `cd`, redirection and path operands of a command line.

        Operands of file-changing commands and of read/list commands are
        checked; `cd` updates a virtual cwd so later targets in the same
        line resolve relative to it. Raises BoundaryViolation on the
        first escape or on a path that needs shell expansion.
        """
        verified: list[VerifiedPath] = []
        cwd = "."

        def check(raw: str) -> VerifiedPath:
            _require_literal(raw)
            path = self.enforcer.resolve(os.path.join(cwd, raw) if not raw.startswith("~") else raw)
            verified.append(path)
            return path

        for segment in _SEGMENT_SPLIT.split(_HEREDOC_TAIL.sub("", command)):
            for pattern in (_REDIRECT, _INPUT_REDIRECT):
                for redirect in pattern.finditer(segment):
                    target = _unquote(redirect.group("target"))
                    if target not in _NULL_DEVICES:
                        check(target)

            words = _words(_INPUT_REDIRECT.sub("", _REDIRECT.sub("", segment)))
            if not words:
                continue
            name, args = words[0], words[1:]
            operands = [a for a in args if not a.startswith("-")]
            if name == "cd":
                destination = args[0] if args else "~"
                if destination == "-":
                    raise OutsideWorkspaceError("`cd -` cannot be verified against the workspace")
                cwd = check(destination).relative
                continue
            if name in ("chmod", "chown") or name in _PATTERN_COMMANDS:
                operands = operands[1:]
            elif name not in _FILE_COMMANDS and name not in _READ_COMMANDS:
                continue
            for operand in operands:
                if operand not in _NULL_DEVICES:
                    check(operand)

        return verified
