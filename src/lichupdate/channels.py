from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Literal, Mapping, Protocol
from urllib.parse import quote

from .client import LichUpdateError
from .config import (
    BETA_BRANCH_PREFIX,
    BETA_REF_ENV,
    DEFAULT_API_BASE_URL,
    DEFAULT_GITHUB_REPO,
    RELEASE_ASSET_NAME,
    STABLE_REF,
)
from .releases import ReleaseInfo, parse_release, parse_releases
from .versioning import VersionKey

_LOGGER = logging.getLogger(__name__)

STABLE_CHANNELS = ("stable", "production")
BETA_CHANNELS = ("beta", "test")


class ChannelResolutionFailure(LichUpdateError):
    pass


class JsonSource(Protocol):
    def fetch_json(self, url: str, *, missing_ok: bool = False) -> Any | None:
        ...


@dataclass(frozen=True)
class ReleaseReference:
    name: str
    kind: Literal["tag", "branch", "ref"]
    channel: str


class ChannelResolver:
    """Turn a channel name into a concrete tag or branch of the release repository."""

    def __init__(
        self,
        metadata: JsonSource,
        *,
        github_repo: str = DEFAULT_GITHUB_REPO,
        api_base_url: str = DEFAULT_API_BASE_URL,
        asset_name: str = RELEASE_ASSET_NAME,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.metadata = metadata
        self.github_repo = github_repo
        self.api_base_url = api_base_url.rstrip("/")
        self.asset_name = asset_name
        self._environ = environ

    @property
    def repo_api_url(self) -> str:
        return f"{self.api_base_url}/repos/{self.github_repo}"

    @property
    def releases_url(self) -> str:
        return f"{self.repo_api_url}/releases?per_page=100"

    @property
    def branches_url(self) -> str:
        return f"{self.repo_api_url}/branches?per_page=100"

    def _env(self, name: str) -> str | None:
        environ = self._environ if self._environ is not None else os.environ
        value = environ.get(name)
        if value is None:
            return None
        return value.strip() or None

    def resolve(self, channel: str) -> str:
        return self.resolve_reference(channel).name

    def resolve_reference(self, channel: str) -> ReleaseReference:
        raw = str(channel or "").strip()
        lowered = raw.lower()
        if lowered in STABLE_CHANNELS:
            return ReleaseReference(name=STABLE_REF, kind="branch", channel="stable")
        if lowered in BETA_CHANNELS:
            return self._resolve_beta()
        if not raw:
            raise ChannelResolutionFailure("Branch name cannot be empty.")
        return ReleaseReference(name=raw, kind="branch", channel=raw)

    def _resolve_beta(self) -> ReleaseReference:
        override = self._env(BETA_REF_ENV)
        if override:
            _LOGGER.info("Using beta reference from %s: %s", BETA_REF_ENV, override)
            return ReleaseReference(name=override, kind="ref", channel="beta")

        stable = self.latest_stable_tag()
        if stable is None:
            raise ChannelResolutionFailure(
                "Could not determine the latest stable release, so no beta reference can be chosen."
            )

        tag = self.latest_prerelease_tag_greater_than(stable)
        if tag is not None:
            return ReleaseReference(name=tag, kind="tag", channel="beta")

        branch = self.latest_prefixed_branch_greater_than(stable)
        if branch is not None:
            return ReleaseReference(name=branch, kind="branch", channel="beta")

        raise ChannelResolutionFailure(
            f"No beta release or '{BETA_BRANCH_PREFIX}' branch newer than {stable} was found. "
            f"Set {BETA_REF_ENV} to choose a reference explicitly."
        )

    def releases(self) -> list[ReleaseInfo] | None:
        payload = self.metadata.fetch_json(self.releases_url)
        if payload is None:
            return None
        return parse_releases(payload, asset_name=self.asset_name)

    def latest_release(self) -> ReleaseInfo | None:
        return parse_release(self.metadata.fetch_json(f"{self.repo_api_url}/releases/latest"), asset_name=self.asset_name)

    def release_for_tag(self, tag: str) -> ReleaseInfo | None:
        url = f"{self.repo_api_url}/releases/tags/{quote(tag, safe='')}"
        return parse_release(self.metadata.fetch_json(url, missing_ok=True), asset_name=self.asset_name)

    def latest_stable_tag(self) -> str | None:
        releases = self.releases()
        if not releases:
            return None
        stable = [r for r in releases if r.is_stable]
        if not stable:
            return None
        return max(stable, key=lambda r: r.key).tag

    def latest_prerelease_tag_greater_than(self, stable_tag: str) -> str | None:
        floor = VersionKey.parse(stable_tag)
        releases = self.releases() or []
        candidates = [r for r in releases if not r.is_stable and r.key > floor]
        if not candidates:
            return None
        return max(candidates, key=lambda r: r.key).tag

    def latest_prefixed_branch_greater_than(self, stable_tag: str) -> str | None:
        floor = VersionKey.parse(stable_tag)
        payload = self.metadata.fetch_json(self.branches_url)
        if not isinstance(payload, list):
            return None
        names: list[str] = []
        for item in payload:
            name = item.get("name") if isinstance(item, dict) else None
            if isinstance(name, str) and name.startswith(BETA_BRANCH_PREFIX):
                names.append(name)
        candidates = [n for n in names if VersionKey.parse(n) > floor]
        if not candidates:
            return None
        return max(candidates, key=VersionKey.parse)
