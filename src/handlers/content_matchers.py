"""Pluggable strategies for matching inside artifact files."""

from __future__ import annotations

import re
from collections import deque
from collections.abc import AsyncIterator
from typing import Any, Protocol


class ContentMatchError(Exception):
    """Matching stopped early; ``partial`` holds what was found before that."""

    def __init__(self, message: str, partial: Any = None) -> None:
        super().__init__(message)
        self.partial = partial


class ContentMatcher(Protocol):
    async def get_matches(self, lines: AsyncIterator[str]) -> Any:
        """Scan ``lines`` and return an opaque match payload.

        Raise :class:`ContentMatchError` to report a failure together with a
        partial payload.
        """
        ...


class RegexLineMatcher:
    """Collect lines matching a regex or containing a substring, with context."""

    def __init__(
        self,
        pattern: str | None = None,
        contains: str | None = None,
        before_context: int = 0,
        after_context: int = 0,
        max_matches: int = 10,
    ) -> None:
        if bool(pattern) == bool(contains):
            raise ValueError("exactly one of pattern or contains is required")
        self._regex = re.compile(pattern) if pattern else None
        self._contains = contains
        self._before_context = max(0, before_context)
        self._after_context = max(0, after_context)
        self._max_matches = max(1, max_matches)

    def _is_match(self, line: str) -> bool:
        if self._regex is not None:
            return self._regex.search(line) is not None
        return self._contains in line

    @staticmethod
    def _payload(matches: list[dict], truncated: bool) -> dict:
        return {"line_matches": {"matches": matches, "truncated": truncated}}

    async def get_matches(self, lines: AsyncIterator[str]) -> dict:
        matches: list[dict] = []
        truncated = False
        before: deque[str] = deque(maxlen=self._before_context)
        # [match entry, after-context lines still owed]
        pending: list[list] = []
        try:
            async for raw in lines:
                line = raw.rstrip("\r\n")
                for entry in pending:
                    entry[0]["after"].append(line)
                    entry[1] -= 1
                pending = [entry for entry in pending if entry[1] > 0]

                # Past the cap, read on only to finish owed after-context.
                if truncated:
                    if not pending:
                        break
                    continue
                if self._is_match(line):
                    if len(matches) >= self._max_matches:
                        truncated = True
                        if not pending:
                            break
                        continue
                    match = {"before": list(before), "match": line, "after": []}
                    matches.append(match)
                    if self._after_context:
                        pending.append([match, self._after_context])
                before.append(line)
        except Exception as exc:
            raise ContentMatchError(str(exc), partial=self._payload(matches, truncated)) from exc
        return self._payload(matches, truncated)
