"""Conflict resolution for sync plans.

A resolver answers one question per conflicting file. `resolve_conflicts`
drives the prompt loop:

    prompt -> overwrite | skip | overwrite-all | skip-all | abort
    prompt -> diff -> (show diff) -> prompt

Abort discards the whole plan by raising ConflictAborted.
"""

from __future__ import annotations

import difflib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from .errors import ConflictAborted
from .plan import ConflictReason, PlannedFile, SyncPlan


logger = logging.getLogger(__name__)


class ConflictChoice(str, Enum):
    OVERWRITE = "overwrite"
    SKIP = "skip"
    DIFF = "diff"
    ABORT = "abort"
    OVERWRITE_ALL = "overwrite-all"
    SKIP_ALL = "skip-all"


@dataclass(frozen=True)
class ConflictContext:
    path: Path
    reason: ConflictReason
    existing_content: str | None
    new_content: str


def unified_diff(existing: str, new: str, path: str | Path) -> str:
    lines = difflib.unified_diff(
        existing.splitlines(keepends=True),
        new.splitlines(keepends=True),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
    )
    return "".join(lines)


class ConflictResolver(ABC):
    @abstractmethod
    def resolve(self, ctx: ConflictContext) -> ConflictChoice: ...

    def show_diff(self, diff: str) -> None:
        """Present a diff after the user asked for one. No-op by default."""


class ForceResolver(ConflictResolver):
    def resolve(self, ctx: ConflictContext) -> ConflictChoice:
        return ConflictChoice.OVERWRITE


class SafeResolver(ConflictResolver):
    def resolve(self, ctx: ConflictContext) -> ConflictChoice:
        return ConflictChoice.SKIP


_PROMPT_KEYS = {
    "o": ConflictChoice.OVERWRITE,
    "s": ConflictChoice.SKIP,
    "d": ConflictChoice.DIFF,
    "a": ConflictChoice.ABORT,
    "O": ConflictChoice.OVERWRITE_ALL,
    "S": ConflictChoice.SKIP_ALL,
}


class InteractiveResolver(ConflictResolver):
    """Prompt on the terminal; unknown answers re-prompt."""

    def __init__(
        self,
        *,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
    ) -> None:
        self._input = input_fn
        self._output = output_fn

    def resolve(self, ctx: ConflictContext) -> ConflictChoice:
        what = "was modified outside promptpack" if ctx.reason == "modified" else "exists but is not tracked"
        self._output(f"\n{ctx.path} {what}.")
        while True:
            try:
                answer = self._input("[o]verwrite / [s]kip / [d]iff / [a]bort / [O]verwrite all / [S]kip all? ")
            except EOFError:
                return ConflictChoice.ABORT
            choice = _PROMPT_KEYS.get(answer.strip())
            if choice is None:
                choice = _PROMPT_KEYS.get(answer.strip().lower()[:1])
            if choice is not None:
                return choice
            self._output("Please answer o, s, d, a, O or S.")

    def show_diff(self, diff: str) -> None:
        self._output(diff if diff else "(no textual differences)")


@dataclass(frozen=True)
class ResolutionSummary:
    overwritten: int = 0
    skipped: int = 0


def resolve_conflicts(
    plan: SyncPlan,
    resolver: ConflictResolver,
    *,
    read_existing: Callable[[PlannedFile], str | None],
) -> tuple[SyncPlan, ResolutionSummary]:
    """Return a new plan with every conflict turned into write or skip.

    Raises ConflictAborted if the resolver answers abort; the input plan is
    left untouched in that case.
    """

    apply_all: ConflictChoice | None = None
    overwritten = skipped = 0
    files: list[PlannedFile] = []

    for f in plan.files:
        if not f.action.is_conflict:
            files.append(f)
            continue

        choice = apply_all
        if choice is None:
            ctx = ConflictContext(
                path=f.path,
                reason=f.action.reason or "untracked",
                existing_content=read_existing(f),
                new_content=f.content,
            )
            while True:
                choice = resolver.resolve(ctx)
                if choice is not ConflictChoice.DIFF:
                    break
                resolver.show_diff(unified_diff(ctx.existing_content or "", ctx.new_content, ctx.path))

        if choice is ConflictChoice.ABORT:
            logger.info("conflict resolution aborted at %s", f.path)
            raise ConflictAborted()
        if choice is ConflictChoice.OVERWRITE_ALL:
            apply_all = choice
        elif choice is ConflictChoice.SKIP_ALL:
            apply_all = choice

        if choice in (ConflictChoice.OVERWRITE, ConflictChoice.OVERWRITE_ALL):
            files.append(f.resolve_overwrite())
            overwritten += 1
        else:
            files.append(f.resolve_skip())
            skipped += 1
        logger.debug("conflict %s resolved: %s", f.key or f.path, choice.value)

    return SyncPlan(files=files), ResolutionSummary(overwritten=overwritten, skipped=skipped)
