from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict, replace

from ._version import __version__
from .client import LichUpdateError
from .commands import Help, parse_request
from .config import Config, config_path, load_config, redact_token, save_config
from .service import HELP_TEXT, build_service

_OPTIONAL_FIELDS = ("lich_dir", "current_version", "runtime_version", "core_files_path", "github_token")
_CONFIG_FIELDS = ("game", "github_repo", "api_base_url", "timeout_s", "cache_ttl_s", *_OPTIONAL_FIELDS)


def build_parser() -> argparse.ArgumentParser:
    # Request flags (--update, -a, --script=...) and the `config` words are not
    # declared here; they come back as unknown arguments.
    p = argparse.ArgumentParser(
        prog="lich-update",
        add_help=False,
        allow_abbrev=False,
        description="Update, snapshot and revert a Lich5 installation.",
    )
    p.add_argument("--lich-dir", help="Lich installation directory (contains lich.rbw)")
    p.add_argument("--game", help="Game variant whose core scripts are refreshed: GS or DR")
    p.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
    p.add_argument("--config", dest="config_path", help="Config file path")
    p.add_argument("--verbose", "-v", action="store_true", help="Log diagnostics to stderr")
    p.add_argument("--version", action="version", version=f"lich-update {__version__}")
    return p


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    lich_dir = args.lich_dir or os.getenv("LICH_DIR") or base.lich_dir
    game = args.game or os.getenv("LICH_GAME") or base.game
    runtime_version = os.getenv("LICH_RUNTIME_VERSION") or base.runtime_version
    github_token = os.getenv("GITHUB_TOKEN") or base.github_token
    timeout_s = args.timeout_s or os.getenv("LICH_UPDATE_TIMEOUT_S") or base.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = base.timeout_s

    return replace(
        base,
        lich_dir=lich_dir,
        game=game,
        timeout_s=timeout_s_f,
        runtime_version=runtime_version,
        github_token=github_token,
    )


def _confirm_stdin(prompt: str) -> bool:
    print(prompt)
    try:
        answer = input("> ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def cmd_config(args: argparse.Namespace, words: list[str]) -> int:
    subcmd = words[0] if words else "show"

    if subcmd == "path":
        print(str(config_path(args.config_path)))
        return 0

    if subcmd == "show":
        cfg = load_config(args.config_path)
        d = asdict(cfg)
        d["github_token"] = redact_token(cfg.github_token)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if subcmd == "set":
        cfg = load_config(args.config_path)
        changes = {}
        if args.lich_dir is not None:
            changes["lich_dir"] = str(args.lich_dir)
        if args.game is not None:
            changes["game"] = args.game
        if args.timeout_s is not None:
            changes["timeout_s"] = args.timeout_s
        for kv in words[1:]:
            if "=" not in kv:
                raise LichUpdateError(f"Expected key=value, got {kv!r}")
            k, v = kv.split("=", 1)
            if k not in _CONFIG_FIELDS:
                raise LichUpdateError(f"Unknown config field {k!r}")
            if k in ("timeout_s", "cache_ttl_s"):
                changes[k] = float(v)
            elif v:
                changes[k] = v
            elif k in _OPTIONAL_FIELDS:
                changes[k] = None
            else:
                raise LichUpdateError(f"Config field {k!r} cannot be empty")
        path = save_config(replace(cfg, **changes), args.config_path)
        print(f"Saved: {path}")
        return 0

    raise LichUpdateError(f"Unknown config command {subcmd!r}; expected path, show or set.")


def main(argv: list[str] | None = None) -> int:
    args, rest = build_parser().parse_known_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        words = [t for t in rest if not t.startswith("-")]
        if words[:1] == ["config"]:
            return cmd_config(args, words[1:])

        request = parse_request(rest)
        if isinstance(request, Help):
            print(HELP_TEXT.rstrip())
            return 0
        cfg = _merge_cfg(load_config(args.config_path), args)
        with build_service(cfg, report=print, confirm=_confirm_stdin) as service:
            return 0 if service.dispatch(request) else 1
    except (LichUpdateError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
