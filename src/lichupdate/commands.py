"""Parse an update request into one of a closed set of operations."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Union

__all__ = [
    "Announce",
    "Update",
    "Branch",
    "Beta",
    "Revert",
    "Snapshot",
    "UpdateFile",
    "Help",
    "Unknown",
    "Request",
    "parse_request",
]

_FILE_FLAG_RE = re.compile(r"^--(script|library|data)=(.*)$", re.IGNORECASE)
_BRANCH_FLAG_RE = re.compile(r"^--branch=(.*)$", re.IGNORECASE)


@dataclass(frozen=True)
class Announce:
    pass


@dataclass(frozen=True)
class Update:
    pass


@dataclass(frozen=True)
class Branch:
    name: str


@dataclass(frozen=True)
class Beta:
    kind: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class Revert:
    pass


@dataclass(frozen=True)
class Snapshot:
    pass


@dataclass(frozen=True)
class UpdateFile:
    kind: str
    name: str


@dataclass(frozen=True)
class Help:
    pass


@dataclass(frozen=True)
class Unknown:
    raw: str


Request = Union[Announce, Update, Branch, Beta, Revert, Snapshot, UpdateFile, Help, Unknown]


def _file_flag(token: str) -> tuple[str, str] | None:
    m = _FILE_FLAG_RE.match(token)
    if not m:
        return None
    return m.group(1).lower(), m.group(2).strip()


def parse_request(args: str | Iterable[str] | None) -> Request:
    """
    Map command tokens to a request. Flags match case-insensitively; values
    such as branch and file names keep their case. No tokens means announce.
    """
    if args is None:
        tokens: list[str] = []
    elif isinstance(args, str):
        tokens = args.split()
    else:
        tokens = [t for t in args if t.strip()]
    if not tokens:
        return Announce()

    head = tokens[0].strip()
    lowered = head.lower()
    raw = " ".join(tokens)

    if lowered in ("--announce", "-a"):
        return Announce()
    if lowered in ("--beta", "--test"):
        for token in tokens[1:]:
            flag = _file_flag(token.strip())
            if flag is not None:
                return Beta(kind=flag[0], name=flag[1])
        return Beta()
    if lowered in ("--help", "-h"):
        return Help()
    if lowered in ("--update", "-u"):
        return Update()
    if m := _BRANCH_FLAG_RE.match(head):
        return Branch(name=m.group(1))
    if lowered in ("--revert", "-r"):
        return Revert()
    if flag := _file_flag(head):
        return UpdateFile(kind=flag[0], name=flag[1])
    if lowered in ("--snapshot", "-s"):
        return Snapshot()
    return Unknown(raw=raw)
