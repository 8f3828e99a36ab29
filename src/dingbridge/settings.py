from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from .config import ConfigError, apply_env_overrides, load_config

DEFAULT_GATEWAY_URL = "http://127.0.0.1:18789"
DEFAULT_SESSION_TIMEOUT_S = 30 * 60

MessageType = Literal["card", "markdown", "text", "auto"]
DmPolicy = Literal["open", "pairing", "allowlist"]
GroupPolicy = Literal["open", "allowlist"]


class GroupSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    system_prompt: str | None = None
    allow_from: list[str] = Field(default_factory=list)


class DingTalkSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    client_id: str = Field(min_length=1)
    client_secret: SecretStr
    robot_code: str | None = None
    corp_id: str | None = None
    agent_id: str | None = None

    message_type: MessageType = "card"
    card_template_id: str | None = None

    session_timeout_s: float = Field(default=DEFAULT_SESSION_TIMEOUT_S, gt=0)
    enable_session_commands: bool = True

    show_thinking: bool = True
    enable_media_upload: bool = True
    enable_video_processing: bool = True

    dm_policy: DmPolicy = "open"
    allow_from: list[str] = Field(default_factory=list)
    group_policy: GroupPolicy = "open"
    group_allowlist: list[str] = Field(default_factory=list)
    groups: dict[str, GroupSettings] = Field(default_factory=dict)

    gateway_url: str = DEFAULT_GATEWAY_URL
    gateway_token: SecretStr | None = None
    gateway_password: SecretStr | None = None

    debug: bool = False

    @property
    def effective_robot_code(self) -> str:
        return self.robot_code or self.client_id

    @property
    def gateway_auth(self) -> str:
        for secret in (self.gateway_token, self.gateway_password):
            if secret is not None and secret.get_secret_value():
                return secret.get_secret_value()
        return ""


def validate_settings(data: dict, *, config_path: Path | None = None) -> DingTalkSettings:
    where = f" in {config_path}" if config_path is not None else ""
    try:
        return DingTalkSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid dingtalk config{where}: {exc}") from exc


def account_ids(config: dict) -> list[str]:
    accounts = config.get("accounts")
    if isinstance(accounts, dict) and accounts:
        return sorted(accounts)
    return ["default"]


def settings_for_account(
    config: dict, account_id: str = "default", *, config_path: Path | None = None
) -> DingTalkSettings:
    accounts = config.get("accounts")
    if isinstance(accounts, dict) and accounts:
        raw = accounts.get(account_id)
        if not isinstance(raw, dict):
            raise ConfigError(f"Unknown account {account_id!r}.")
    else:
        raw = {key: value for key, value in config.items() if key != "accounts"}
    return validate_settings(apply_env_overrides(raw), config_path=config_path)


def load_settings(
    path: str | Path | None = None, account_id: str = "default"
) -> tuple[DingTalkSettings, Path]:
    config, cfg_path = load_config(path)
    return settings_for_account(config, account_id, config_path=cfg_path), cfg_path
