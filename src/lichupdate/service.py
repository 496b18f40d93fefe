from __future__ import annotations

import json
import logging
import shutil
import tempfile
import textwrap
from pathlib import Path
from typing import Callable, Mapping

import httpx

from .applier import ApplyPartialFailure, UpdateApplier
from .artifacts import ArtifactDownloadError, ArtifactExtractError, ArtifactFetcher, branch_tarball_url
from .channels import ChannelResolutionFailure, ChannelResolver
from .client import LichUpdateError, MetadataClient, NetworkFailure, Report
from .commands import Announce, Beta, Branch, Help, Request, Revert, Snapshot, Unknown, Update, UpdateFile
from .compat import CompatibilityBlocked, CompatibilityGate, detect_runtime_version
from .config import RELEASE_ASSET_NAME, VERSION_FILE, Config, InstallLayout, load_core_files
from .files import FileKind, FileUpdater
from .locking import InstallLock
from .releases import ReleaseInfo
from .snapshots import SnapshotError, SnapshotManager, read_version_label
from .versioning import VersionKey, major_minor

_LOGGER = logging.getLogger(__name__)

Confirm = Callable[[str], bool]

SUPPORTED_MAJOR = 5
EXTRACTED_NAME = "lich5"

BETA_PROMPT = (
    "You are about to join the Lich5 beta program. Beta releases are tested less thoroughly "
    "than stable releases and may break your setup. Continue? (Y/N)"
)

HELP_TEXT = textwrap.dedent(
    """\
    lich-update [--announce | --update | --branch=NAME | --beta | --snapshot | --revert | --help]
                [--script=NAME.lic | --library=NAME.rb | --data=NAME.xml]

      --announce, -a          Report whether a newer Lich5 release is available.
      --update, -u            Snapshot the installation, then install the latest stable release.
      --branch=NAME           Snapshot the installation, then install the named branch.
      --beta, --test          Opt in to the current beta release and install it.
      --beta --script=NAME    Update one script, library or data file from the beta channel.
      --snapshot, -s          Back up lich.rbw, lib/ and the core scripts.
      --revert, -r            Restore the most recent snapshot.
      --script=NAME.lic       Update one script from the scripts repository.
      --library=NAME.rb       Update one library file from the stable branch.
      --data=NAME.xml         Update one data file (.xml or .ui).
      --help, -h              Show this message.

    Options: --lich-dir DIR, --game GS|DR, --timeout-s SECONDS, --config PATH, --verbose, --version
    Config file: lich-update config path | show | set [key=value ...]
    Environment: LICH_DIR, LICH_GAME, LICH_UPDATE_TIMEOUT_S, LICH_RUNTIME_VERSION, GITHUB_TOKEN,
                 LICH_BETA_REF, LICH_UPDATE_CONFIG_PATH
    """
)


def _decline(prompt: str) -> bool:
    return False


class UpdateService:
    """
    The long-lived object behind every request. Holds the metadata cache, the
    install lock and the ``report``/``confirm`` collaborators, and runs
    snapshot, fetch, compatibility check and apply in that order.
    """

    def __init__(
        self,
        layout: InstallLayout,
        *,
        metadata: MetadataClient,
        resolver: ChannelResolver,
        snapshots: SnapshotManager,
        fetcher: ArtifactFetcher,
        gate: CompatibilityGate,
        applier: UpdateApplier,
        files: FileUpdater,
        report: Report,
        confirm: Confirm = _decline,
        github_repo: str,
        current_version: str | None = None,
        lock: InstallLock | None = None,
    ) -> None:
        self.layout = layout
        self.metadata = metadata
        self.resolver = resolver
        self.snapshots = snapshots
        self.fetcher = fetcher
        self.gate = gate
        self.applier = applier
        self.files = files
        self.report = report
        self.confirm = confirm
        self.github_repo = github_repo
        self.current_version_override = current_version
        self.lock = lock or InstallLock(layout.lock_path)

    def close(self) -> None:
        self.metadata.close()

    def __enter__(self) -> "UpdateService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # State

    def current_version(self) -> str:
        if self.current_version_override:
            return self.current_version_override
        label = read_version_label(self.layout.version_file)
        if label:
            return label
        try:
            marker = json.loads(self.layout.installed_marker.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            marker = None
        if isinstance(marker, dict) and isinstance(marker.get("version"), str) and marker["version"].strip():
            return marker["version"].strip()
        return "0"

    def _latest_release(self) -> ReleaseInfo:
        release = self.resolver.latest_release()
        if release is None:
            raise NetworkFailure("Could not determine the latest Lich5 release. Please try again later.")
        return release

    # Operations

    def announce(self) -> bool:
        current = self.current_version()
        major, _ = major_minor(current)
        if major != SUPPORTED_MAJOR:
            self.report(
                f"Installed Lich version {current} is not supported by lich-update. "
                "Only Lich5 installations can be announced or updated."
            )
            return False

        release = self._latest_release()
        if release.key > VersionKey.parse(current):
            self.report("*** NEW VERSION AVAILABLE ***")
            self.report(f"Lich version {release.version} is available (installed: {current}).")
            if release.notes:
                self.report("")
                self.report(release.notes)
                self.report("")
            self.report("If you are interested in updating, run `lich-update --update` now.")
        else:
            self.report(f"Lich version {current} is good. Enjoy!")
        return True

    def update(self) -> bool:
        current = self.current_version()
        release = self._latest_release()
        if not release.key > VersionKey.parse(current):
            self.report(f"Lich version {current} is good. Enjoy!")
            return True
        if not release.asset_url:
            raise ArtifactDownloadError(
                f"Release {release.tag} does not publish a {self.resolver.asset_name} archive."
            )
        self._install(release.asset_url, label=f"Lich5 version {release.version}", version_label=release.version)
        return True

    def update_branch(self, name: str) -> bool:
        branch = (name or "").strip()
        if not branch:
            raise ChannelResolutionFailure("Branch name cannot be empty.")
        url = branch_tarball_url(self.github_repo, branch)
        try:
            self._install(url, label=f"branch '{branch}'")
        except ArtifactDownloadError as e:
            raise ArtifactDownloadError(
                f"Could not download branch '{branch}'. Check the branch name and try again. ({e})"
            ) from e
        return True

    def beta(self, kind: str | None = None, name: str | None = None) -> bool:
        if kind is not None:
            return self.update_file(kind, name or "", channel="beta")

        if not self.confirm(BETA_PROMPT):
            self.report("Aborting the beta update. Your installation was not changed.")
            return False

        ref = self.resolver.resolve_reference("beta")
        self.report(f"Installing Lich5 beta reference {ref.name}.")
        if ref.kind in ("tag", "ref"):
            release = self.resolver.release_for_tag(ref.name)
            if release is not None and release.asset_url:
                self._install(
                    release.asset_url, label=f"Lich5 beta {release.version}", version_label=release.version
                )
                return True
            if ref.kind == "tag":
                raise ArtifactDownloadError(
                    f"Beta release {ref.name} does not publish a {self.resolver.asset_name} archive."
                )
            self.report(f"No beta release archive is published for {ref.name}; installing the branch archive instead.")
        self._install(branch_tarball_url(self.github_repo, ref.name), label=f"beta branch '{ref.name}'")
        return True

    def snapshot(self) -> bool:
        with self.lock:
            path = self.snapshots.snapshot()
        self.report(f"Current Lich ecosystem files ({self.layout.executable_name}, lib, core scripts) backed up to {path}.")
        return True

    def revert(self) -> bool:
        with self.lock:
            label = self.snapshots.restore_latest()
            if label:
                try:
                    self.applier.write_marker(label)
                except OSError as e:
                    raise SnapshotError(f"Reverted, but the installed version could not be recorded: {e}") from e
        self.report(f"Lich5 has been reverted to Lich5 version {label or 'unknown'}.")
        self.report("Please restart Lich to use the restored version.")
        return True

    def update_file(self, kind: FileKind | str, name: str, channel: str = "production") -> bool:
        with self.lock:
            return self.files.update_file(kind, name, channel)

    def help(self) -> bool:
        self.report(HELP_TEXT.rstrip())
        return True

    def dispatch(self, request: Request) -> bool:
        try:
            if isinstance(request, Announce):
                return self.announce()
            if isinstance(request, Update):
                return self.update()
            if isinstance(request, Branch):
                return self.update_branch(request.name)
            if isinstance(request, Beta):
                return self.beta(request.kind, request.name)
            if isinstance(request, Snapshot):
                return self.snapshot()
            if isinstance(request, Revert):
                return self.revert()
            if isinstance(request, UpdateFile):
                return self.update_file(request.kind, request.name)
            if isinstance(request, Help):
                return self.help()
            if isinstance(request, Unknown):
                self.report(f"Command '{request.raw}' unknown, illegitimate and ignored. Run `lich-update --help`.")
                return False
            raise AssertionError("unreachable")
        except ApplyPartialFailure as e:
            _LOGGER.debug("Apply failed", exc_info=True)
            self.report(f"*** UPDATE FAILED *** {e}")
            self.report(
                "Your installation may be inconsistent. Run `lich-update --revert` to restore the "
                "snapshot taken before this update."
            )
            return False
        except LichUpdateError as e:
            _LOGGER.debug("Request %r failed", request, exc_info=True)
            self.report(str(e))
            return False

    # Internals

    def _install(self, url: str, *, label: str, version_label: str | None = None) -> None:
        layout = self.layout
        with self.lock:
            path = self.snapshots.snapshot()
            self.report(f"Snapshot of the current installation saved to {path}.")

            try:
                layout.temp_dir.mkdir(parents=True, exist_ok=True)
                scratch = Path(tempfile.mkdtemp(prefix="lich-update-", dir=layout.temp_dir))
            except OSError as e:
                raise ArtifactExtractError(f"Could not create a scratch directory in {layout.temp_dir}: {e}") from e
            try:
                root = self.fetcher.fetch_and_extract(url, scratch, name=EXTRACTED_NAME)
                self.fetcher.ensure_structure(root, label=label)
                if not self.gate.check(root):
                    raise CompatibilityBlocked(f"{label} was not installed. Your installation was not changed.")
                new_label = version_label or read_version_label(root / "lib" / VERSION_FILE) or label
                self.applier.apply(root, new_label)
            finally:
                shutil.rmtree(scratch, ignore_errors=True)

        self.report(f"Lich5 update to {label} complete.")
        self.report("Please restart Lich to use the new version.")


def build_service(
    cfg: Config,
    *,
    report: Report,
    confirm: Confirm = _decline,
    transport: httpx.BaseTransport | None = None,
    environ: Mapping[str, str] | None = None,
) -> UpdateService:
    if not cfg.lich_dir:
        raise LichUpdateError(
            "No Lich directory configured. Pass --lich-dir, set LICH_DIR, or run "
            "`lich-update config set --lich-dir PATH`."
        )
    layout = InstallLayout.from_lich_dir(cfg.lich_dir)
    if not layout.lich_dir.is_dir():
        raise LichUpdateError(f"Lich directory does not exist: {layout.lich_dir}")
    core_files = load_core_files(cfg.core_files_path)

    metadata = MetadataClient(
        report=report,
        timeout_s=cfg.timeout_s,
        cache_ttl_s=cfg.cache_ttl_s,
        token=cfg.github_token,
        api_base_url=cfg.api_base_url,
        transport=transport,
    )
    resolver = ChannelResolver(
        metadata,
        github_repo=cfg.github_repo,
        api_base_url=cfg.api_base_url,
        asset_name=RELEASE_ASSET_NAME,
        environ=environ,
    )
    files = FileUpdater(layout, metadata, resolver, report=report, github_repo=cfg.github_repo)
    return UpdateService(
        layout,
        metadata=metadata,
        resolver=resolver,
        snapshots=SnapshotManager(layout, core_scripts=core_files.snapshot_scripts),
        fetcher=ArtifactFetcher(metadata, executable_name=layout.executable_name),
        gate=CompatibilityGate(
            runtime_version=cfg.runtime_version,
            report=report,
            probe=lambda: detect_runtime_version(timeout_s=cfg.timeout_s),
        ),
        applier=UpdateApplier(layout, files, core_files, game=cfg.game, report=report),
        files=files,
        report=report,
        confirm=confirm,
        github_repo=cfg.github_repo,
        current_version=cfg.current_version,
    )
