"""Release metadata as published on the GitHub Releases API."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable

from .config import RELEASE_ASSET_NAME
from .versioning import VersionKey, is_prerelease

__all__ = ["ReleaseInfo", "parse_release", "parse_releases", "clean_release_notes"]

_CHANGELOG_TAIL_RE = re.compile(r"## What's Changed.+$", re.DOTALL)


@dataclass(frozen=True)
class ReleaseInfo:
    """One published release and the tarball asset it ships."""

    tag: str
    prerelease: bool = False
    asset_url: str | None = None
    notes: str | None = None

    @property
    def version(self) -> str:
        return self.tag.strip().lstrip("vV")

    @property
    def key(self) -> VersionKey:
        return VersionKey.parse(self.tag)

    @property
    def is_stable(self) -> bool:
        return not self.prerelease and not is_prerelease(self.tag)


def clean_release_notes(raw: object) -> str | None:
    if not isinstance(raw, str):
        return None
    cleaned = _CHANGELOG_TAIL_RE.sub("", raw).strip()
    return cleaned or None


def _select_asset(assets: Iterable[Any], asset_name: str) -> str | None:
    pattern = re.compile(re.escape(asset_name) + r"$", re.IGNORECASE)
    for asset in assets:
        if not isinstance(asset, dict):
            continue
        name = str(asset.get("name") or "")
        url = asset.get("browser_download_url")
        if pattern.search(name) and isinstance(url, str) and url.strip():
            return url.strip()
    return None


def parse_release(payload: Any, *, asset_name: str = RELEASE_ASSET_NAME) -> ReleaseInfo | None:
    if not isinstance(payload, dict):
        return None
    if payload.get("draft"):
        return None
    tag = str(payload.get("tag_name") or "").strip()
    if not tag:
        return None
    assets = payload.get("assets")
    return ReleaseInfo(
        tag=tag,
        prerelease=bool(payload.get("prerelease")),
        asset_url=_select_asset(assets if isinstance(assets, list) else [], asset_name),
        notes=clean_release_notes(payload.get("body")),
    )


def parse_releases(payload: Any, *, asset_name: str = RELEASE_ASSET_NAME) -> list[ReleaseInfo]:
    if not isinstance(payload, list):
        return []
    out: list[ReleaseInfo] = []
    for item in payload:
        rel = parse_release(item, asset_name=asset_name)
        if rel is not None:
            out.append(rel)
    return out
