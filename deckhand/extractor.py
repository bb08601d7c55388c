"""
DECKHAND Command Extractor

Turns model output into an ordered list of ExecutableUnits.

Two passes:
  1. parse_script_blocks() finds fenced blocks that hold shell commands.
  2. extract_units() splits one block into units. Heredocs stay atomic,
     and lines that are echoed terminal output rather than commands
     are dropped (outside heredoc bodies only).
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from loguru import logger
from pydantic import BaseModel, ConfigDict

from deckhand.errors import DeckhandError


class UnresolvedHeredocError(DeckhandError):
    code = "UNRESOLVED_HEREDOC"


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------

class ExecutableUnit(BaseModel):
    """One atomic instruction. Immutable once extracted."""
    model_config = ConfigDict(frozen=True)

    text: str
    is_heredoc: bool = False
    delimiter: str | None = None
    quoted: bool = False
    terminated: bool = True

    @property
    def lines(self) -> list[str]:
        return self.text.split("\n")

    @property
    def opener(self) -> str:
        return self.lines[0].strip()

    @property
    def body(self) -> list[str]:
        """Heredoc content lines, excluding opener and terminator."""
        if not self.is_heredoc:
            return []
        inner = self.lines[1:]
        if self.terminated and inner:
            inner = inner[:-1]
        return inner

    @property
    def body_text(self) -> str:
        """The text the shell would feed through the heredoc."""
        body = self.body
        return "\n".join(body) + "\n" if body else ""


@dataclass(frozen=True)
class ScriptBlock:
    language: str
    code: str


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

# `<<<` is a here-string, not a heredoc.
HEREDOC_OPENER = re.compile(r"""(?<!<)<<-?\s*(['"]?)(\w+)\1\s*$""")

_SHELL_LANGUAGES = {"bash", "sh", "shell", "zsh", "terminal", "console"}
_PLAIN_LANGUAGES = {"", "text", "plaintext"}
_PROMPT_PREFIXES = ("$ ", "> ", "% ")
_MAX_UNTAGGED_LINES = 20

_NOISE_PREFIXES = (
    "#", "//", "total ", "List of devices", "BUILD ", "> Task", "Starting:",
    "Installed on", "Error type", "Error:", "WARNING:", "INFO", "FAILURE:",
    "Caused by:", "Traceback (most recent call last)",
)

_NOISE_PATTERNS = [
    re.compile(r"^[d-][rwx-]{9}"),                                  # ls -l rows
    re.compile(r"^\d+\s+actionable"),
    re.compile(r"^[A-Z][a-z]+:$"),                                  # bare headers
    re.compile(r"^[\s\-|=+─━│┃┌┐└┘├┤┬┴┼═║╔╗╚╝╠╣╦╩╬]+$"),           # table borders
    re.compile(r"^\d+\.\d+\.\d+"),                                  # version lines
    re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}"),               # ISO timestamps
    re.compile(r"^\[\d{2}:\d{2}:\d{2}(\.\d+)?\]"),
    re.compile(r"^\[?(DEBUG|ERROR|WARN|TRACE|FATAL)\b[\]:\s]"),
    re.compile(r"^at (org\.gradle|java\.base|[\w$.]+\([\w.]*:\d+\))"),
    re.compile(r'^File ".+", line \d+'),
]

_SHELL_STARTS = (
    "./", "npm ", "pnpm ", "yarn ", "npx ", "cd ", "mkdir ", "chmod ", "chown ",
    "git ", "brew ", "apt ", "curl ", "wget ", "adb ", "flutter ", "gradlew",
    "python ", "python3 ", "pip ", "dotnet ", "docker ", "docker-compose",
    "cat ", "ls", "echo ", "export ", "cargo ", "go ", "make", "rm ", "cp ", "mv ",
    "touch ",
)


def is_noise(line: str) -> bool:
    """True for stripped lines that look like terminal output, not commands."""
    if line.startswith(_NOISE_PREFIXES):
        return True
    return any(p.search(line) for p in _NOISE_PATTERNS)


def _looks_like_shell(line: str) -> bool:
    if line.startswith("#") or line.startswith(_SHELL_STARTS):
        return True
    if " && " in line or " || " in line:
        return True
    if line.startswith(("→", "->", "BUILD ")) or re.match(r"^[A-Z][a-z]+:", line):
        return False
    if re.match(r"^\d+\s+(files?|packages?)", line, re.IGNORECASE):
        return False
    return len(line) < 200 and "  " not in line


def _strip_prompt(line: str) -> str:
    trimmed = line.lstrip()
    if is_noise(trimmed):
        # `> Task :app:build` is Gradle output, not a prompt.
        return line
    for prefix in _PROMPT_PREFIXES:
        if trimmed.startswith(prefix):
            return trimmed[len(prefix):]
    return line


# ---------------------------------------------------------------------------
# Fenced blocks
# ---------------------------------------------------------------------------

def parse_script_blocks(text: str) -> list[ScriptBlock]:
    """
    Find fenced blocks that hold shell commands.

    Shell-tagged fences are always accepted. Untagged or `text` fences are
    accepted only when every line looks like a command. A ``` line inside a
    heredoc body does not close the fence.
    """
    blocks: list[ScriptBlock] = []
    lines = text.split("\n")
    i = 0
    while i < len(lines):
        stripped = lines[i].strip()
        if not stripped.startswith("```"):
            i += 1
            continue

        language = stripped[3:].strip().lower()
        body: list[str] = []
        delimiter: str | None = None
        i += 1
        while i < len(lines):
            line = lines[i]
            if delimiter is None and line.strip() == "```":
                break
            if delimiter is None:
                line = _strip_prompt(line)
                match = HEREDOC_OPENER.search(line.strip())
                if match:
                    delimiter = match.group(2)
            elif line.strip() == delimiter:
                delimiter = None
            body.append(line)
            i += 1
        i += 1

        block = _accept_block(language, body)
        if block:
            blocks.append(block)

    logger.debug(f"[EXTRACT] {len(blocks)} script block(s) in response")
    return blocks


def _accept_block(language: str, body: list[str]) -> ScriptBlock | None:
    code = "\n".join(body).strip()
    if not code:
        return None
    if language in _SHELL_LANGUAGES:
        return ScriptBlock(language="bash", code=code)
    if language in _PLAIN_LANGUAGES:
        lines = [l.strip() for l in code.split("\n") if l.strip()]
        if len(lines) <= _MAX_UNTAGGED_LINES and all(_looks_like_shell(l) for l in lines):
            return ScriptBlock(language="bash", code=code)
    return None


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------

def extract_units(code: str, strict: bool = False) -> list[ExecutableUnit]:
    """
    Split one script block into ordered ExecutableUnits.

    A heredoc runs from its opener through the line equal to its delimiter.
    Without a terminator it consumes the rest of the input and is returned
    with terminated=False, or raises UnresolvedHeredocError when strict.
    """
    units: list[ExecutableUnit] = []
    lines = code.split("\n")
    i = 0
    while i < len(lines):
        raw = lines[i]
        line = raw.strip()
        if not line or is_noise(line):
            i += 1
            continue

        match = HEREDOC_OPENER.search(line)
        if not match:
            units.append(ExecutableUnit(text=raw.rstrip()))
            i += 1
            continue

        delimiter = match.group(2)
        collected = [raw]
        terminated = False
        i += 1
        while i < len(lines):
            collected.append(lines[i])
            if lines[i].strip() == delimiter:
                terminated = True
                break
            i += 1
        i += 1

        if not terminated:
            if strict:
                raise UnresolvedHeredocError(
                    f"heredoc '{line}' has no terminator line '{delimiter}'"
                )
            logger.warning(f"[EXTRACT] Unterminated heredoc ({delimiter}), kept as one unit")

        units.append(ExecutableUnit(
            text="\n".join(collected),
            is_heredoc=True,
            delimiter=delimiter,
            quoted=bool(match.group(1)),
            terminated=terminated,
        ))

    return units


def extract_from_response(text: str, strict: bool = False) -> list[ExecutableUnit]:
    """All units from every script block of a model response, in order."""
    units: list[ExecutableUnit] = []
    for block in parse_script_blocks(text):
        units.extend(extract_units(block.code, strict=strict))
    logger.debug(f"[EXTRACT] {len(units)} unit(s) extracted")
    return units
