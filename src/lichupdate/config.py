from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

DEFAULT_GITHUB_REPO = "elanthia-online/lich-5"
DEFAULT_API_BASE_URL = "https://api.github.com"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_CACHE_TTL_S = 300.0
DEFAULT_GAME = "GS"

STABLE_REF = "main"
BETA_REF_ENV = "LICH_BETA_REF"
BETA_BRANCH_PREFIX = "pre/beta"
RELEASE_ASSET_NAME = "lich-5.tar.gz"

SCRIPTS_REPO_URL = "https://raw.githubusercontent.com/elanthia-online/scripts/master/scripts"
DR_SCRIPTS_REPO_URL = "https://raw.githubusercontent.com/elanthia-online/dr-scripts/main"
RAW_CONTENT_URL = "https://raw.githubusercontent.com"
GITHUB_URL = "https://github.com"

MAIN_EXECUTABLE = "lich.rbw"
VERSION_FILE = "version.rb"
SNAPSHOT_PREFIX = "L5-snapshot-"
INSTALLED_MARKER = "lich-update.json"
LOCK_FILENAME = ".lich-update.lock"


@dataclass(frozen=True)
class Config:
    lich_dir: str | None = None
    game: str = DEFAULT_GAME
    github_repo: str = DEFAULT_GITHUB_REPO
    api_base_url: str = DEFAULT_API_BASE_URL
    timeout_s: float = DEFAULT_TIMEOUT_S
    cache_ttl_s: float = DEFAULT_CACHE_TTL_S
    current_version: str | None = None  # overrides the version scanned from lib/version.rb
    runtime_version: str | None = None  # overrides probing `ruby` for RUBY_VERSION
    core_files_path: str | None = None
    github_token: str | None = None


@dataclass(frozen=True)
class InstallLayout:
    """Paths making up one installed Lich tree."""

    lich_dir: Path
    executable_name: str = MAIN_EXECUTABLE

    @classmethod
    def from_lich_dir(cls, lich_dir: str | Path, *, executable_name: str = MAIN_EXECUTABLE) -> "InstallLayout":
        return cls(lich_dir=Path(lich_dir).expanduser().resolve(), executable_name=executable_name)

    @property
    def executable(self) -> Path:
        return self.lich_dir / self.executable_name

    @property
    def lib_dir(self) -> Path:
        return self.lich_dir / "lib"

    @property
    def script_dir(self) -> Path:
        return self.lich_dir / "scripts"

    @property
    def data_dir(self) -> Path:
        return self.lich_dir / "data"

    @property
    def backup_dir(self) -> Path:
        return self.lich_dir / "backup"

    @property
    def temp_dir(self) -> Path:
        return self.lich_dir / "temp"

    @property
    def version_file(self) -> Path:
        return self.lib_dir / VERSION_FILE

    @property
    def installed_marker(self) -> Path:
        return self.data_dir / INSTALLED_MARKER

    @property
    def lock_path(self) -> Path:
        return self.lich_dir / LOCK_FILENAME


@dataclass(frozen=True)
class CoreFiles:
    """Allowlists of the core files each game variant depends on."""

    snapshot_scripts: tuple[str, ...] = ()
    scripts: dict[str, tuple[str, ...]] = field(default_factory=dict)
    data: tuple[str, ...] = ()

    def scripts_for_game(self, game: str) -> list[str] | None:
        variant = game.strip().lower()[:2]
        if variant not in ("gs", "dr"):
            return None
        out = list(self.scripts.get("all", ()))
        out.extend(self.scripts.get(variant, ()))
        return out


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("LICH_UPDATE_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("lich-update") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    write_json_atomic(path, asdict(cfg))

    # Best-effort permissions hardening (mainly for tokens).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass
    return path


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def _str_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(v.strip() for v in value if isinstance(v, str) and v.strip())


def parse_core_files(raw: Any) -> CoreFiles:
    if not isinstance(raw, dict):
        return CoreFiles()
    scripts_raw = raw.get("scripts")
    scripts: dict[str, tuple[str, ...]] = {}
    if isinstance(scripts_raw, dict):
        for key, value in scripts_raw.items():
            if isinstance(key, str):
                scripts[key.strip().lower()] = _str_tuple(value)
    return CoreFiles(
        snapshot_scripts=_str_tuple(raw.get("snapshot_scripts")),
        scripts=scripts,
        data=_str_tuple(raw.get("data")),
    )


def load_core_files(path_override: str | Path | None = None) -> CoreFiles:
    # The packaged list can be replaced without a rebuild.
    if path_override is not None:
        text = Path(path_override).expanduser().read_text(encoding="utf-8")
    else:
        text = resources.files("lichupdate").joinpath("core_files.json").read_text(encoding="utf-8")
    return parse_core_files(json.loads(text))


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
