from __future__ import annotations

import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import Callable

from .client import LichUpdateError, Report
from .versioning import VersionKey

_LOGGER = logging.getLogger(__name__)

REQUIREMENT_FILE = Path("lib") / "version.rb"
_REQUIRED_RE = re.compile(r"""REQUIRED_RUBY\s*=\s*["']([^"']+)["']""")


class CompatibilityBlocked(LichUpdateError):
    pass


def detect_runtime_version(executable: str = "ruby", *, timeout_s: float = 10.0) -> str | None:
    path = shutil.which(executable)
    if path is None:
        return None
    try:
        proc = subprocess.run(
            [path, "-e", "print RUBY_VERSION"],
            capture_output=True,
            text=True,
            timeout=timeout_s,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as e:
        _LOGGER.debug("Could not probe %s: %s", path, e)
        return None
    out = proc.stdout.strip()
    return out if proc.returncode == 0 and out else None


def read_required_version(marker_file: Path) -> str | None:
    try:
        text = marker_file.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    m = _REQUIRED_RE.search(text)
    return m.group(1).strip() if m else None


class CompatibilityGate:
    """Refuse artifacts whose declared minimum runtime is newer than ours."""

    def __init__(
        self,
        *,
        runtime_version: str | None,
        report: Report,
        probe: Callable[[], str | None] | None = None,
    ) -> None:
        self.runtime_version = runtime_version
        self.report = report
        self._probe = probe

    def _runtime(self) -> str | None:
        # Probed at most once, and only when an artifact declares a requirement.
        if not self.runtime_version and self._probe is not None:
            self.runtime_version = self._probe()
            self._probe = None
        return self.runtime_version

    def check(self, extracted_root: Path, marker_file: Path = REQUIREMENT_FILE) -> bool:
        required = read_required_version(extracted_root / marker_file)
        if required is None:
            _LOGGER.debug("No runtime requirement declared in %s", extracted_root / marker_file)
            return True
        runtime = self._runtime()
        if not runtime:
            self.report(
                f"Could not determine the installed Ruby version; the update requires Ruby {required} "
                "and will proceed without checking."
            )
            return True
        if VersionKey.parse(runtime) >= VersionKey.parse(required):
            return True
        self.report(
            f"*** UPDATE ABORTED *** This update requires Ruby {required} or newer, "
            f"but Ruby {runtime} is installed. Please upgrade Ruby and try again."
        )
        return False
