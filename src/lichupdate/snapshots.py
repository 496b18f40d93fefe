from __future__ import annotations

import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from .client import LichUpdateError
from .config import SNAPSHOT_PREFIX, VERSION_FILE, InstallLayout

_LOGGER = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"
_VERSION_LINE_RE = re.compile(r"""LICH_VERSION\s*=\s*["']?([^"'\s]+)""")
_SNAPSHOT_NAME_RE = re.compile(
    rf"^{re.escape(SNAPSHOT_PREFIX)}(?P<stamp>\d{{4}}(?:-\d{{2}}){{5}})(?:-(?P<seq>\d{{1,9}}))?$"
)


class SnapshotError(LichUpdateError):
    pass


class NoSnapshotAvailable(LichUpdateError):
    pass


def read_version_label(version_file: Path) -> str:
    """Best-effort scan of ``LICH_VERSION = "x.y.z"``; empty when absent."""

    try:
        text = version_file.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    label = ""
    for line in text.splitlines():
        m = _VERSION_LINE_RE.search(line)
        if m:
            label = m.group(1)
    return label


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _snapshot_order(path: Path) -> tuple[str, int]:
    # Same-second snapshots carry a numeric suffix; compare it as a number.
    m = _SNAPSHOT_NAME_RE.match(path.name)
    if not m:
        return (path.name, 0)
    return (m.group("stamp"), int(m.group("seq") or 0))


def clear_directory(directory: Path) -> None:
    if not directory.exists():
        return
    for child in directory.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def replace_bytes(source: Path, target: Path) -> None:
    # Rewrite in place: the running entry point keeps its inode.
    with source.open("rb") as r, target.open("wb") as w:
        shutil.copyfileobj(r, w)


class SnapshotManager:
    """Timestamped backups of the executable, the library tree and the core scripts."""

    def __init__(
        self,
        layout: InstallLayout,
        *,
        core_scripts: Iterable[str],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.layout = layout
        self.core_scripts = tuple(core_scripts)
        self._clock = clock

    def list_snapshots(self) -> list[Path]:
        """Completed snapshots, newest first."""

        backup_dir = self.layout.backup_dir
        if not backup_dir.is_dir():
            return []
        found = [
            p
            for p in backup_dir.iterdir()
            if p.is_dir() and p.name.startswith(SNAPSHOT_PREFIX) and not p.name.endswith(PARTIAL_SUFFIX)
        ]
        return sorted(found, key=_snapshot_order, reverse=True)

    def _new_snapshot_path(self) -> Path:
        stamp = self._clock().strftime("%Y-%m-%d-%H-%M-%S")
        base = self.layout.backup_dir / f"{SNAPSHOT_PREFIX}{stamp}"
        candidate = base
        n = 1
        while candidate.exists() or candidate.with_name(candidate.name + PARTIAL_SUFFIX).exists():
            candidate = base.with_name(f"{base.name}-{n:03d}")
            n += 1
        return candidate

    def snapshot(self) -> Path:
        layout = self.layout
        final = self._new_snapshot_path()
        partial = final.with_name(final.name + PARTIAL_SUFFIX)
        _LOGGER.info("Writing snapshot %s", final)
        try:
            partial.mkdir(parents=True)
            shutil.copy2(layout.executable, partial / layout.executable_name)
            if layout.lib_dir.is_dir():
                shutil.copytree(layout.lib_dir, partial / "lib", symlinks=True)
            else:
                (partial / "lib").mkdir()
            scripts_out = partial / "scripts"
            scripts_out.mkdir()
            for name in self.core_scripts:
                source = layout.script_dir / name
                if source.is_file():
                    shutil.copy2(source, scripts_out / name)
            partial.rename(final)
        except OSError as e:
            shutil.rmtree(partial, ignore_errors=True)
            raise SnapshotError(f"Snapshot failed and was discarded: {e}") from e
        return final

    def restore_latest(self) -> str:
        """Destructively restore the newest snapshot and return its version label."""

        snapshots = self.list_snapshots()
        if not snapshots:
            raise NoSnapshotAvailable("No prior Lich5 version found. Seek assistance.")
        source = snapshots[0]
        layout = self.layout
        _LOGGER.info("Restoring snapshot %s", source)

        try:
            layout.lib_dir.mkdir(parents=True, exist_ok=True)
            clear_directory(layout.lib_dir)
            snapshot_lib = source / "lib"
            if snapshot_lib.is_dir():
                shutil.copytree(snapshot_lib, layout.lib_dir, symlinks=True, dirs_exist_ok=True)

            layout.script_dir.mkdir(parents=True, exist_ok=True)
            for name in self.core_scripts:
                (layout.script_dir / name).unlink(missing_ok=True)
            snapshot_scripts = source / "scripts"
            if snapshot_scripts.is_dir():
                shutil.copytree(snapshot_scripts, layout.script_dir, dirs_exist_ok=True)

            snapshot_exe = source / layout.executable_name
            if snapshot_exe.is_file():
                replace_bytes(snapshot_exe, layout.executable)
        except OSError as e:
            raise SnapshotError(f"Restoring {source.name} failed part way; the installation may be incomplete: {e}") from e

        return read_version_label(layout.lib_dir / VERSION_FILE)
