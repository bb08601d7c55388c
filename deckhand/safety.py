"""
DECKHAND Safety — Mutation Classifier & Preprocessor

classify() tags each unit safe / mutating-git / unknown from a static
table of git subcommands. preprocess() puts a stash ahead of every
mutating-git unit, plus a branch/fetch check ahead of a push that was
not preceded by a pull, fetch or rebase.

The safety protocol is a small state machine passed by value:

    Idle -> Preserving -> Executing -> Idle
                 |            |
                 +------> Recovering --(resume)--> Idle

Every state carries the set of mutating-git unit texts that already
failed in this run. begin_unit() refuses any of them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from loguru import logger

from deckhand.errors import DeckhandError
from deckhand.extractor import ExecutableUnit


class MutationTag(str, Enum):
    SAFE = "safe"
    MUTATING_GIT = "mutating-git"
    UNKNOWN = "unknown"


class ReplayRefused(DeckhandError):
    code = "REPLAY_REFUSED"


class SafetyProtocolError(DeckhandError):
    code = "SAFETY_PROTOCOL"


# ---------------------------------------------------------------------------
# Classification tables
# ---------------------------------------------------------------------------

_SEGMENT_SPLIT = re.compile(r"\s*(?:&&|\|\||;|\|)\s*")
_ENV_ASSIGNMENT = re.compile(r"^\w+=\S*$")
_GIT_GLOBAL_WITH_VALUE = {"-C", "-c", "--git-dir", "--work-tree", "--namespace"}

_READ_ONLY = {
    "status", "log", "diff", "show", "blame", "rev-parse", "fetch", "ls-files",
    "describe", "shortlog", "reflog", "grep", "ls-remote", "cat-file", "rev-list",
}
_ALWAYS_MUTATING = {
    "push", "pull", "rebase", "merge", "reset", "clean", "cherry-pick", "revert",
    "restore", "filter-branch", "filter-repo", "am",
}
_BRANCH_DESTRUCTIVE = {"-d", "-D", "-m", "-M", "--delete", "--move", "--force", "-f"}
_BRANCH_LISTING = {"-a", "-r", "-v", "-vv", "--list", "-l", "--all", "--remotes",
                   "--show-current", "--merged", "--no-merged", "--contains"}
_REMOTE_MUTATING = {"add", "remove", "rm", "rename", "set-url", "prune"}


def _git_words(segment: str) -> list[str] | None:
    """Words after `git` and its global options, or None if not a git command."""
    words = segment.split()
    while words and (_ENV_ASSIGNMENT.match(words[0]) or words[0] in ("sudo", "command")):
        words = words[1:]
    if not words or words[0] != "git":
        return None
    words = words[1:]
    while words and words[0].startswith("-"):
        option = words.pop(0)
        if option in _GIT_GLOBAL_WITH_VALUE and words:
            words.pop(0)
    return words


def _classify_git(words: list[str]) -> MutationTag:
    if not words:
        return MutationTag.SAFE
    sub, args = words[0], words[1:]

    if sub in _ALWAYS_MUTATING:
        return MutationTag.MUTATING_GIT
    if sub in _READ_ONLY:
        return MutationTag.SAFE

    if sub in ("checkout", "switch"):
        # Creating a branch carries the working tree along.
        if args and args[0] in ("-b", "-c", "--create"):
            return MutationTag.UNKNOWN
        return MutationTag.MUTATING_GIT
    if sub == "branch":
        if any(a in _BRANCH_DESTRUCTIVE for a in args):
            return MutationTag.MUTATING_GIT
        if not args or all(a in _BRANCH_LISTING for a in args):
            return MutationTag.SAFE
        return MutationTag.UNKNOWN
    if sub == "commit":
        return MutationTag.MUTATING_GIT if "--amend" in args else MutationTag.UNKNOWN
    if sub == "stash":
        if args and args[0] in ("drop", "clear"):
            return MutationTag.MUTATING_GIT
        if args and args[0] in ("list", "show"):
            return MutationTag.SAFE
        return MutationTag.UNKNOWN
    if sub == "remote":
        if args and args[0] in _REMOTE_MUTATING:
            return MutationTag.UNKNOWN
        return MutationTag.SAFE
    if sub == "tag":
        return MutationTag.SAFE if not args or args[0] in ("-l", "--list") else MutationTag.UNKNOWN
    if sub == "config":
        return MutationTag.SAFE if args and args[0] in ("--get", "--list", "-l") else MutationTag.UNKNOWN
    return MutationTag.UNKNOWN


def _segments(unit: ExecutableUnit) -> list[str]:
    line = unit.opener if unit.is_heredoc else unit.text
    return [s for s in _SEGMENT_SPLIT.split(line) if s.strip()]


def classify(unit: ExecutableUnit) -> MutationTag:
    """Any mutating git segment wins; all-safe segments are safe; else unknown."""
    tags = []
    for segment in _segments(unit):
        words = _git_words(segment)
        tags.append(MutationTag.UNKNOWN if words is None else _classify_git(words))

    if MutationTag.MUTATING_GIT in tags:
        return MutationTag.MUTATING_GIT
    if tags and all(t is MutationTag.SAFE for t in tags):
        return MutationTag.SAFE
    return MutationTag.UNKNOWN


def _git_subcommands(unit: ExecutableUnit) -> list[str]:
    subs = []
    for segment in _segments(unit):
        words = _git_words(segment)
        if words:
            subs.append(words[0])
    return subs


# ---------------------------------------------------------------------------
# Preprocessing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClassifiedUnit:
    unit: ExecutableUnit
    tag: MutationTag
    prerequisites: tuple[ExecutableUnit, ...] = ()

    @property
    def text(self) -> str:
        return self.unit.text

    @property
    def preservation_steps(self) -> tuple[ExecutableUnit, ...]:
        """Prerequisites whose failure must block the unit (non read-only ones)."""
        return tuple(p for p in self.prerequisites if classify(p) is not MutationTag.SAFE)


def preprocess(
    units: list[ExecutableUnit],
    auto_stash: bool = True,
    stash_message: str = "deckhand-auto-stash",
) -> list[ClassifiedUnit]:
    """Classify a batch and attach prerequisites to its mutating-git units."""
    classified: list[ClassifiedUnit] = []
    synced = False

    for unit in units:
        tag = classify(unit)
        subs = _git_subcommands(unit)
        prerequisites: list[ExecutableUnit] = []

        if tag is MutationTag.MUTATING_GIT:
            if "push" in subs and not synced and not _syncs_before_push(subs):
                prerequisites += [
                    ExecutableUnit(text="git rev-parse --abbrev-ref HEAD"),
                    ExecutableUnit(text="git fetch"),
                ]
            if auto_stash:
                prerequisites += [
                    ExecutableUnit(text="git status --porcelain"),
                    ExecutableUnit(text=f'git stash push --include-untracked -m "{stash_message}"'),
                ]
            logger.info(f"[SAFETY] mutating-git: {unit.text[:80]} (+{len(prerequisites)} prerequisite(s))")

        if any(s in ("pull", "fetch", "rebase") for s in subs):
            synced = True

        classified.append(ClassifiedUnit(unit=unit, tag=tag, prerequisites=tuple(prerequisites)))

    return classified


def _syncs_before_push(subs: list[str]) -> bool:
    head = subs[: subs.index("push")]
    return any(s in ("pull", "fetch", "rebase") for s in head)


# ---------------------------------------------------------------------------
# Protocol state machine
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Idle:
    failed: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Preserving:
    unit: ClassifiedUnit
    failed: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Executing:
    unit: ClassifiedUnit
    failed: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Recovering:
    unit: ClassifiedUnit
    reason: str
    failed: frozenset[str] = field(default_factory=frozenset)


SafetyState = Union[Idle, Preserving, Executing, Recovering]


def begin_unit(state: SafetyState, unit: ClassifiedUnit) -> SafetyState:
    if not isinstance(state, Idle):
        raise SafetyProtocolError(f"cannot start a unit from {type(state).__name__}")
    if unit.tag is MutationTag.MUTATING_GIT:
        if unit.text in state.failed:
            logger.warning(f"[SAFETY] Refusing replay of failed unit: {unit.text[:80]}")
            raise ReplayRefused(
                f"'{unit.text}' already failed in this run. Check `git status` "
                "and propose a revised command instead of repeating it."
            )
        if unit.prerequisites:
            return Preserving(unit=unit, failed=state.failed)
    return Executing(unit=unit, failed=state.failed)


def preservation_done(state: SafetyState, ok: bool) -> SafetyState:
    if not isinstance(state, Preserving):
        raise SafetyProtocolError(f"no preservation in progress ({type(state).__name__})")
    if ok:
        return Executing(unit=state.unit, failed=state.failed)
    return Recovering(unit=state.unit, reason="state preservation failed", failed=state.failed)


def unit_done(state: SafetyState, ok: bool) -> SafetyState:
    if not isinstance(state, Executing):
        raise SafetyProtocolError(f"no unit executing ({type(state).__name__})")
    if ok or state.unit.tag is not MutationTag.MUTATING_GIT:
        return Idle(failed=state.failed)
    logger.warning(f"[SAFETY] mutating-git unit failed: {state.unit.text[:80]}")
    return Recovering(
        unit=state.unit,
        reason="mutating git command failed",
        failed=state.failed | {state.unit.text},
    )


def resume(state: SafetyState) -> SafetyState:
    """Leave Recovering once the model has been asked to reassess."""
    if isinstance(state, Recovering):
        return Idle(failed=state.failed)
    return state
