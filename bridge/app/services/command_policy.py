"""Command allow-list with ``*`` wildcards."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from bridge.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)

UNIVERSAL_WILDCARD = "*"


@dataclass(frozen=True)
class CommandPattern:
    """One allow-list entry and its compiled matcher."""
    raw: str
    matcher: re.Pattern

    @classmethod
    def compile(cls, raw: str) -> "CommandPattern":
        # Each * matches any substring; the entry must match the whole token
        body = ".*".join(re.escape(part) for part in strip_slash(raw).split("*"))
        return cls(raw=raw, matcher=re.compile(f"^{body}$", re.IGNORECASE))

    def matches(self, token: str) -> bool:
        return self.matcher.match(token) is not None


@dataclass(frozen=True)
class _PolicySnapshot:
    enabled: bool
    entries: tuple[str, ...]
    patterns: tuple[CommandPattern, ...]
    universal: bool


def strip_slash(token: str) -> str:
    """Drop one leading slash; entries and commands are compared without it."""
    return token[1:] if token.startswith("/") else token


def base_command(command: str) -> str:
    """Return the first whitespace-delimited token of a command line."""
    parts = command.strip().split(None, 1)
    return strip_slash(parts[0]) if parts else ""


class CommandPolicy:
    """Decides whether a command line may be executed.

    The compiled pattern set is an immutable snapshot. ``reload`` builds a
    new snapshot and swaps the reference, so readers always see either the
    old or the new set, never a partially built one.
    """

    def __init__(self, entries: Iterable[str] = (), enabled: bool = True, debug: bool = False):
        self._debug = debug
        self._snapshot = self._build(entries, enabled)

    @staticmethod
    def _build(entries: Iterable[str], enabled: bool) -> _PolicySnapshot:
        cleaned = tuple(e.strip() for e in entries if e and e.strip())
        return _PolicySnapshot(
            enabled=enabled,
            entries=cleaned,
            patterns=tuple(CommandPattern.compile(e) for e in cleaned if e != UNIVERSAL_WILDCARD),
            universal=UNIVERSAL_WILDCARD in cleaned,
        )

    def reload(self, entries: Iterable[str], enabled: bool = True) -> None:
        snapshot = self._build(entries, enabled)
        self._snapshot = snapshot
        logger.info(f"Loaded {len(snapshot.entries)} command patterns (whitelist enabled: {enabled})")
        if self._debug:
            for entry in snapshot.entries:
                logger.info(f"  - Pattern: {entry}")

    @property
    def enabled(self) -> bool:
        return self._snapshot.enabled

    @property
    def entries(self) -> tuple[str, ...]:
        return self._snapshot.entries

    def match(self, command: str) -> Optional[str]:
        """Return the entry that allows ``command``, or None if denied.

        When the whitelist is disabled, ``"*"`` is returned. With several
        overlapping patterns, the first in configured order is reported.
        """
        snapshot = self._snapshot
        if not snapshot.enabled or snapshot.universal:
            return UNIVERSAL_WILDCARD

        token = base_command(command)
        if not token:
            return None
        for pattern in snapshot.patterns:
            if pattern.matches(token):
                return pattern.raw
        return None

    def is_allowed(self, command: str) -> bool:
        matched = self.match(command)
        if matched is not None:
            if self._debug:
                logger.info(f"Command '{base_command(command)}' matched pattern '{matched}'")
            return True

        logger.warning(
            f"Command not in whitelist: {base_command(command)}",
            extra=get_log_context(category="authorization", command=base_command(command)),
        )
        return False

    def describe(self) -> list[str]:
        """List the allowed entries, or a single explanatory marker."""
        snapshot = self._snapshot
        if not snapshot.enabled:
            return ["ALL_COMMANDS_ALLOWED - Command whitelist is disabled"]
        if snapshot.universal:
            return ["ALL_COMMANDS_ALLOWED - Universal wildcard (*) is configured"]
        return list(snapshot.entries)
