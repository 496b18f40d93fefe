"""Download, unpack and shape-check release tarballs."""

from __future__ import annotations

import logging
import shutil
import tarfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Protocol
from urllib.parse import quote

from .client import LichUpdateError, NetworkFailure
from .config import GITHUB_URL, MAIN_EXECUTABLE

_LOGGER = logging.getLogger(__name__)

MAX_ARCHIVE_ENTRIES = 20000
MAX_ARCHIVE_TOTAL_BYTES = 500 * 1024 * 1024  # 500 MiB


class ArtifactDownloadError(LichUpdateError):
    pass


class ArtifactExtractError(LichUpdateError):
    pass


class EmptyArtifactError(LichUpdateError):
    pass


class ArtifactStructureInvalid(LichUpdateError):
    pass


class Downloader(Protocol):
    def download(self, url: str, dest: Path) -> Path:
        ...


def branch_tarball_url(github_repo: str, branch: str) -> str:
    return f"{GITHUB_URL}/{github_repo}/archive/refs/heads/{quote(branch.strip(), safe='/')}.tar.gz"


def validate_structure(root: Path, *, executable_name: str = MAIN_EXECUTABLE) -> bool:
    """An installable tree has ``lib/`` and the main executable at its root."""

    return (root / "lib").is_dir() and (root / executable_name).is_file()


def _check_member(member: tarfile.TarInfo, root: Path) -> Path | None:
    name = member.name
    if not name or name in (".", "./"):
        return None
    if PurePosixPath(name).is_absolute() or name.startswith("/"):
        raise ArtifactExtractError(f"Archive contains an absolute path entry: {name!r}")
    target = (root / name).resolve()
    if target != root and root not in target.parents:
        raise ArtifactExtractError(f"Archive contains an invalid path entry: {name!r}")
    return target


def safe_extract_tar_gz(archive_path: Path, dest: Path) -> int:
    """Extract regular files and directories only; returns the member count."""

    total_bytes = 0
    count = 0
    try:
        dest.mkdir(parents=True, exist_ok=True)
        root = dest.resolve()
        with tarfile.open(archive_path, "r:gz") as tar:
            for member in tar:
                target = _check_member(member, root)
                if target is None:
                    continue
                count += 1
                if count > MAX_ARCHIVE_ENTRIES:
                    raise ArtifactExtractError("Archive contains too many entries.")
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    # Links, devices and the pax global header are skipped.
                    _LOGGER.debug("Skipping non-regular archive member %s", member.name)
                    continue
                total_bytes += member.size
                if total_bytes > MAX_ARCHIVE_TOTAL_BYTES:
                    raise ArtifactExtractError("Archive expands beyond safe limits.")
                target.parent.mkdir(parents=True, exist_ok=True)
                source = tar.extractfile(member)
                if source is None:
                    continue
                with source, target.open("wb") as out:
                    shutil.copyfileobj(source, out)
                if member.mode & 0o111:
                    target.chmod(0o755)
    except (tarfile.TarError, zlib.error, EOFError, OSError) as e:
        raise ArtifactExtractError(f"Could not decompress update archive {archive_path.name}: {e}") from e
    return count


class ArtifactFetcher:
    def __init__(self, downloader: Downloader, *, executable_name: str = MAIN_EXECUTABLE) -> None:
        self.downloader = downloader
        self.executable_name = executable_name

    def fetch_and_extract(self, url: str, scratch_dir: Path, *, name: str) -> Path:
        """
        Download ``url`` to ``scratch_dir/<name>.tar.gz`` and unpack it so the
        archive's single top-level folder ends up at ``scratch_dir/<name>``.
        """
        archive_path = scratch_dir / f"{name}.tar.gz"
        unpack_dir = scratch_dir / f"{name}-unpacked"
        final = scratch_dir / name

        try:
            scratch_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactExtractError(f"Could not prepare scratch directory {scratch_dir}: {e}") from e
        try:
            self.downloader.download(url, archive_path)
        except (NetworkFailure, OSError) as e:
            raise ArtifactDownloadError(f"Could not download update archive from {url}: {e}") from e
        safe_extract_tar_gz(archive_path, unpack_dir)

        try:
            children = sorted(unpack_dir.iterdir())
            if not children:
                raise EmptyArtifactError(f"Update archive from {url} contained no files.")
            if final.exists():
                shutil.rmtree(final)
            if len(children) == 1 and children[0].is_dir():
                children[0].rename(final)
                unpack_dir.rmdir()
            else:
                unpack_dir.rename(final)
            archive_path.unlink(missing_ok=True)
        except OSError as e:
            raise ArtifactExtractError(f"Could not move the unpacked update into place: {e}") from e
        _LOGGER.debug("Update extracted to %s", final)
        return final

    def ensure_structure(self, root: Path, *, label: str) -> None:
        if not validate_structure(root, executable_name=self.executable_name):
            raise ArtifactStructureInvalid(
                f"The downloaded {label} does not appear to be a valid Lich installation "
                f"(expected lib/ and {self.executable_name})."
            )
