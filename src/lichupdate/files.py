from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from .client import LichUpdateError, Report
from .config import DEFAULT_GITHUB_REPO, DR_SCRIPTS_REPO_URL, RAW_CONTENT_URL, SCRIPTS_REPO_URL, InstallLayout

_LOGGER = logging.getLogger(__name__)


class FileKind(str, Enum):
    SCRIPT = "script"
    LIBRARY = "library"
    DATA = "data"


_EXTENSIONS: dict[FileKind, re.Pattern[str]] = {
    FileKind.SCRIPT: re.compile(r"\.lic$"),
    FileKind.LIBRARY: re.compile(r"\.rb$"),
    FileKind.DATA: re.compile(r"\.(?:xml|ui)$"),
}


class Downloader(Protocol):
    def download(self, url: str, dest: Path) -> Path:
        ...


class RefResolver(Protocol):
    def resolve(self, channel: str) -> str:
        ...


@dataclass(frozen=True)
class FileSource:
    location: Path
    url: str


def has_valid_extension(kind: FileKind, name: str) -> bool:
    return bool(_EXTENSIONS[kind].search(name))


class FileUpdater:
    """Refresh one script, library or data file from its canonical remote."""

    def __init__(
        self,
        layout: InstallLayout,
        downloader: Downloader,
        resolver: RefResolver,
        *,
        report: Report,
        github_repo: str = DEFAULT_GITHUB_REPO,
    ) -> None:
        self.layout = layout
        self.downloader = downloader
        self.resolver = resolver
        self.report = report
        self.github_repo = github_repo

    def source_for(self, kind: FileKind, name: str, channel: str = "production") -> FileSource:
        if kind is FileKind.SCRIPT:
            base = DR_SCRIPTS_REPO_URL if name.lower() == "dependency.lic" else SCRIPTS_REPO_URL
            return FileSource(self.layout.script_dir, f"{base}/{name}")
        if kind is FileKind.LIBRARY:
            ref = self.resolver.resolve(channel)
            return FileSource(self.layout.lib_dir, f"{RAW_CONTENT_URL}/{self.github_repo}/{ref}/lib/{name}")
        return FileSource(self.layout.data_dir, f"{SCRIPTS_REPO_URL}/{name}")

    def update_file(self, kind: FileKind | str, name: str, channel: str = "production") -> bool:
        try:
            kind = FileKind(str(getattr(kind, "value", kind)).lower())
        except ValueError:
            self.report(f"Unknown file type '{kind}'. Use script, library or data.")
            return False

        name = name.strip()
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            self.report(f"The requested file name '{name}' is not valid.")
            return False
        if not has_valid_extension(kind, name):
            self.report(f"The requested file {name} has an incorrect extension.")
            self.report(
                "Valid extensions are '.lic' for scripts, '.rb' for library files, "
                "and '.xml' or '.ui' for data files. Please correct and try again."
            )
            return False

        try:
            source = self.source_for(kind, name, channel)
        except LichUpdateError as e:
            self.report(f"Error updating {name}: {e}")
            return False

        source.location.mkdir(parents=True, exist_ok=True)
        target = source.location / name
        tmp = target.with_name(name + ".tmp")
        old = target.with_name(name + ".old")
        try:
            self.downloader.download(source.url, tmp)
            if target.exists():
                target.replace(old)
            tmp.replace(target)
        except (LichUpdateError, OSError) as e:
            tmp.unlink(missing_ok=True)
            if old.exists() and not target.exists():
                old.replace(target)
            self.report(f"Error updating {name}: {e}")
            self.report(
                f"The file {name} is not available via lich-update. Check the spelling of "
                f"your requested file, or use ';jinx' to download {name} from another repository."
            )
            return False
        old.unlink(missing_ok=True)
        _LOGGER.info("Updated %s from %s", target, source.url)
        self.report(f"{name} has been updated.")
        return True
