from __future__ import annotations

import os
import tomllib
from pathlib import Path

# Environment variable names for secrets
ENV_CLIENT_ID = "DINGBRIDGE_CLIENT_ID"
ENV_CLIENT_SECRET = "DINGBRIDGE_CLIENT_SECRET"
ENV_GATEWAY_TOKEN = "DINGBRIDGE_GATEWAY_TOKEN"

LOCAL_CONFIG_NAME = Path(".dingbridge") / "dingbridge.toml"
HOME_CONFIG_PATH = Path.home() / ".dingbridge" / "dingbridge.toml"

_ENV_OVERRIDES = {
    ENV_CLIENT_ID: "client_id",
    ENV_CLIENT_SECRET: "client_secret",
    ENV_GATEWAY_TOKEN: "gateway_token",
}


class ConfigError(RuntimeError):
    pass


def _config_candidates() -> list[Path]:
    candidates = [Path.cwd() / LOCAL_CONFIG_NAME, HOME_CONFIG_PATH]
    if candidates[0] == candidates[1]:
        return [candidates[0]]
    return candidates


def _read_config(cfg_path: Path) -> dict:
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {e}") from None


def load_config(path: str | Path | None = None) -> tuple[dict, Path]:
    if path:
        cfg_path = Path(path).expanduser()
        return _read_config(cfg_path), cfg_path

    for candidate in _config_candidates():
        if candidate.is_file():
            return _read_config(candidate), candidate

    raise ConfigError("Missing dingbridge config.")


def apply_env_overrides(config: dict) -> dict:
    """Return a copy of ``config`` with secrets taken from the environment.

    Environment variables take precedence over values in the config file.
    """
    merged = dict(config)
    for env_name, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value and value.strip():
            merged[key] = value.strip()
    return merged
