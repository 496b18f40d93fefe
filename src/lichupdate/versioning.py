"""Ordering of the version strings found in tags, branch names and version files."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import total_ordering

__all__ = ["VersionKey", "major_minor", "is_prerelease"]

# Trailing dotted-numeric token plus an optional "-beta.1" / ".rc2" style label.
_VERSION_TOKEN_RE = re.compile(r"\d+(?:\.\d+)*(?:[-.][A-Za-z][0-9A-Za-z]*(?:\.[0-9A-Za-z]+)*)?")
_MAJOR_MINOR_RE = re.compile(r"(\d+)\.(\d+)")
# Longer digit runs are treated as unparsable rather than converted.
_MAX_DIGITS = 64
_PRERELEASE_MARKERS = ("alpha", "beta", "rc", "pre", "dev", "preview")


def _label_token(raw: str) -> tuple[int, object]:
    if raw.isdigit() and len(raw) <= _MAX_DIGITS:
        return (0, int(raw))
    return (1, raw.lower())


@total_ordering
@dataclass(frozen=True, eq=False)
class VersionKey:
    """Totally ordered key derived from an arbitrary version-ish string.

    Unparsable input produces the sentinel key, which sorts below every
    parsed version and compares equal only to other sentinels.
    """

    major: int = 0
    minor: int = 0
    patch: int = 0
    prerelease_label: str | None = None
    valid: bool = True

    @classmethod
    def parse(cls, raw: object) -> "VersionKey":
        text = str(raw).strip() if raw is not None else ""
        if text[:1] in ("v", "V"):
            text = text[1:]
        matches = _VERSION_TOKEN_RE.findall(text)
        if not matches:
            return cls.sentinel()
        dotted = [m for m in matches if "." in m]
        token = (dotted or matches)[-1]

        label: str | None = None
        label_match = re.search(r"[-.]([A-Za-z].*)$", token)
        if label_match:
            label = label_match.group(1)
            token = token[: label_match.start()]

        digits = token.split(".")[:3]
        if any(len(p) > _MAX_DIGITS for p in digits):
            return cls.sentinel()
        parts = [int(p) for p in digits]
        while len(parts) < 3:
            parts.append(0)
        return cls(major=parts[0], minor=parts[1], patch=parts[2], prerelease_label=label)

    @classmethod
    def sentinel(cls) -> "VersionKey":
        return cls(valid=False)

    @property
    def is_prerelease(self) -> bool:
        return self.prerelease_label is not None

    def _sort_key(self) -> tuple:
        if not self.valid:
            return (0,)
        if self.prerelease_label is None:
            # A release sorts above every pre-release of the same numbers.
            label_key: tuple = (1,)
        else:
            label_key = (0, tuple(_label_token(p) for p in re.split(r"[.\-]", self.prerelease_label) if p))
        return (1, self.major, self.minor, self.patch, label_key)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VersionKey):
            return NotImplemented
        return self._sort_key() == other._sort_key()

    def __lt__(self, other: "VersionKey") -> bool:
        if not isinstance(other, VersionKey):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __hash__(self) -> int:
        return hash(self._sort_key())

    def __str__(self) -> str:
        if not self.valid:
            return "0"
        base = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease_label is None:
            return base
        return f"{base}.{self.prerelease_label}"


def major_minor(raw: object) -> tuple[int, int] | tuple[None, None]:
    if raw is None:
        return (None, None)
    text = str(raw).strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    m = _MAJOR_MINOR_RE.search(text)
    if not m:
        return (None, None)
    if len(m.group(1)) > _MAX_DIGITS or len(m.group(2)) > _MAX_DIGITS:
        return (None, None)
    return (int(m.group(1)), int(m.group(2)))


def is_prerelease(raw: object) -> bool:
    """Return ``True`` when ``raw`` carries a pre-release marker such as ``-beta``."""

    text = str(raw or "").lower()
    tokens = [t for t in re.split(r"[/.\-+_]", text) if t]
    for token in tokens:
        if any(token.startswith(marker) for marker in _PRERELEASE_MARKERS):
            return True
    return False
