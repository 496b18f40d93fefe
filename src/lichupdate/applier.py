from __future__ import annotations

import logging
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .client import LichUpdateError, Report
from .config import CoreFiles, InstallLayout, write_json_atomic
from .files import FileKind, FileUpdater
from .snapshots import replace_bytes

_LOGGER = logging.getLogger(__name__)


class ApplyPartialFailure(LichUpdateError):
    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"Update failed while {step}: {cause}")
        self.step = step
        self.cause = cause


class UpdateApplier:
    """Replace the installed tree with an extracted artifact."""

    def __init__(
        self,
        layout: InstallLayout,
        files: FileUpdater,
        core_files: CoreFiles,
        *,
        game: str,
        report: Report,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.layout = layout
        self.files = files
        self.core_files = core_files
        self.game = game
        self.report = report
        self._clock = clock

    def apply(self, extracted_root: Path, version_label: str) -> None:
        layout = self.layout
        self._step("replacing library files", lambda: self.swap_library(extracted_root / "lib"))
        self.report("All Lich lib files have been updated.")
        self._step("refreshing core data and scripts", self.sync_core_files)
        self._step(
            f"replacing {layout.executable_name}",
            lambda: replace_bytes(extracted_root / layout.executable_name, layout.executable),
        )
        self._step("recording the installed version", lambda: self.write_marker(version_label))

    def _step(self, step: str, action: Callable[[], None]) -> None:
        _LOGGER.debug("Apply step: %s", step)
        try:
            action()
        except (OSError, LichUpdateError) as e:
            raise ApplyPartialFailure(step, e) from e

    def swap_library(self, new_lib: Path) -> None:
        """
        Stage ``new_lib`` beside the installed library and swap it in with two
        renames. Installed subfolders the artifact does not ship are carried
        over. When a rename is refused the library is cleared and copied over.
        """
        lib_dir = self.layout.lib_dir
        stamp = str(int(self._clock()))
        staged = lib_dir.with_name(f".lib-staged-{stamp}")
        retired = lib_dir.with_name(f".lib-retired-{stamp}")

        shutil.rmtree(staged, ignore_errors=True)
        shutil.copytree(new_lib, staged, symlinks=True)
        if lib_dir.is_dir():
            for child in lib_dir.iterdir():
                if child.is_dir() and not (staged / child.name).exists():
                    shutil.copytree(child, staged / child.name, symlinks=True)

        if not lib_dir.exists():
            staged.rename(lib_dir)
            return
        try:
            lib_dir.rename(retired)
        except OSError as e:
            _LOGGER.info("Directory swap unavailable (%s); copying library in place", e)
            shutil.rmtree(staged, ignore_errors=True)
            self._copy_library(new_lib)
            return
        try:
            staged.rename(lib_dir)
        except OSError:
            retired.rename(lib_dir)
            shutil.rmtree(staged, ignore_errors=True)
            self._copy_library(new_lib)
            return
        shutil.rmtree(retired, ignore_errors=True)

    def _copy_library(self, new_lib: Path) -> None:
        lib_dir = self.layout.lib_dir
        for child in list(lib_dir.iterdir()):
            if not child.is_dir():
                child.unlink()
            elif (new_lib / child.name).exists():
                shutil.rmtree(child)
        shutil.copytree(new_lib, lib_dir, symlinks=True, dirs_exist_ok=True)

    def sync_core_files(self) -> None:
        scripts = self.core_files.scripts_for_game(self.game)
        if scripts is None:
            self.report(f"invalid game type '{self.game}', unsure what scripts to update")
            return

        data_dir = self.layout.data_dir
        for name in self.core_files.data:
            current = data_dir / name
            if current.exists():
                stem, dot, ext = name.rpartition(".")
                aside = data_dir / (f"{stem}-{int(self._clock())}.{ext}" if dot else f"{name}-{int(self._clock())}")
                shutil.copy2(current, aside)
                self.report(f"The prior version of {name} was renamed to {aside}.")
            self.files.update_file(FileKind.DATA, name)

        for name in scripts:
            self.files.update_file(FileKind.SCRIPT, name)

    def write_marker(self, version_label: str) -> None:
        write_json_atomic(
            self.layout.installed_marker,
            {
                "version": version_label,
                "updated_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            },
        )
