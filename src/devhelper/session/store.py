"""Ordered conversation history and the views derived from it."""
from __future__ import annotations

import itertools
from dataclasses import dataclass
from enum import Enum

from ..errors import NotFound

SEPARATOR = "\n\n"


class EntryKind(str, Enum):
    USER_TEXT = "user-text"
    CODE_CONTEXT = "code-context"
    ASSISTANT_REPLY = "assistant-reply"


@dataclass
class Entry:
    kind: EntryKind
    content: str
    sequence: int


class ContextStore:
    """Append-only history; entries leave only through reset()."""

    def __init__(self) -> None:
        self._entries: list[Entry] = []
        self._counter = itertools.count(1)

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[Entry]:
        return list(self._entries)

    def append(self, kind: EntryKind | str, content: str) -> Entry:
        kind = EntryKind(kind)
        if kind is not EntryKind.ASSISTANT_REPLY and not content:
            raise ValueError(f"{kind.value} entry requires non-empty content")
        entry = Entry(kind=kind, content=content, sequence=next(self._counter))
        self._entries.append(entry)
        return entry

    def _join(self, kind: EntryKind, before: int | None = None) -> str:
        return SEPARATOR.join(
            entry.content
            for entry in self._entries
            if entry.kind is kind and (before is None or entry.sequence < before)
        )

    def code_context(self) -> str:
        return self._join(EntryKind.CODE_CONTEXT)

    def prior_user_turns(self, before: Entry | None = None) -> str:
        """User turns in order; pass the turn being submitted as `before` to leave it out."""
        return self._join(EntryKind.USER_TEXT, before.sequence if before is not None else None)

    def update_reply(self, entry: Entry | None, content: str) -> Entry:
        target = self._find_reply(entry)
        target.content = content
        return target

    def _find_reply(self, entry: Entry | None) -> Entry:
        if entry is None:
            for candidate in reversed(self._entries):
                if candidate.kind is EntryKind.ASSISTANT_REPLY:
                    return candidate
            raise NotFound("No assistant reply to update")
        for candidate in self._entries:
            if candidate is entry and candidate.kind is EntryKind.ASSISTANT_REPLY:
                return candidate
        raise NotFound(f"Assistant reply #{entry.sequence} not found")

    def reset(self) -> None:
        # sequence numbers are not reused after a reset
        self._entries = []
