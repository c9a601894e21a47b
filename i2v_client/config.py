"""Configuration loading for the image-to-video client.

Settings live in a YAML file (``config.yaml`` by default). Every key is
optional; missing keys fall back to the defaults below, which match the
A2E.ai ``userImage2Video`` endpoints.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from i2v_client.models import DEFAULT_NEGATIVE_PROMPT, DEFAULT_PROMPT

_DEFAULT_CONFIG = "config.yaml"

STATUS_MODES = ("single", "list")
RESPONSE_MODES = ("async", "single")
AUTH_SCHEMES = ("bearer", "raw")
SUCCESS_CHECKS = ("status", "code", "both")


@dataclass
class ApiSettings:
    """Remote endpoint family and its conventions."""
    base_url: str = "https://video.a2e.ai"
    submit_path: str = "/api/v1/userImage2Video/start"
    status_path: str = "/api/v1/userImage2Video"
    status_all_path: str = "/api/v1/userImage2Video/allRecords"
    status_mode: str = "list"
    response_mode: str = "async"
    auth_scheme: str = "bearer"
    success_check: str = "both"
    timeout: float = 60.0


@dataclass
class PollingSettings:
    """Status polling cadence and ceiling. ``None`` or 0 disables a limit."""
    interval: float = 10.0
    max_attempts: int | None = 360
    max_wait: float | None = 3600.0


@dataclass
class DefaultsSettings:
    prompt: str = DEFAULT_PROMPT
    negative_prompt: str = DEFAULT_NEGATIVE_PROMPT
    duration: int = 5
    duration_unit: str = "seconds"
    variant: str = "standard"
    extend_prompt: bool = True
    count: int = 1


@dataclass
class Settings:
    api: ApiSettings = field(default_factory=ApiSettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    defaults: DefaultsSettings = field(default_factory=DefaultsSettings)
    credentials_path: Path = Path("~/.config/i2v-client/credentials.json")
    credentials_key: str = "a2e_api_token"
    output_dir: Path = Path("output")


def _choice(section: dict, key: str, default: str, allowed: tuple[str, ...]) -> str:
    value = str(section.get(key, default)).lower()
    if value not in allowed:
        raise ValueError(
            f"Invalid value {value!r} for '{key}'. Expected one of: {', '.join(allowed)}"
        )
    return value


def _limit(value: Any) -> Any:
    return value if value else None


def settings_from_dict(config: dict | None) -> Settings:
    """Build a Settings object from a parsed config dict.

    Raises:
        ValueError: If an enumerated option has an unknown value.
    """
    config = config or {}
    api_cfg = config.get("api", {}) or {}
    poll_cfg = config.get("polling", {}) or {}
    defaults_cfg = config.get("defaults", {}) or {}
    cred_cfg = config.get("credentials", {}) or {}
    output_cfg = config.get("output", {}) or {}

    base = ApiSettings()
    api = ApiSettings(
        base_url=str(api_cfg.get("base_url", base.base_url)).rstrip("/"),
        submit_path=api_cfg.get("submit_path", base.submit_path),
        status_path=str(api_cfg.get("status_path", base.status_path)).rstrip("/"),
        status_all_path=api_cfg.get("status_all_path", base.status_all_path),
        status_mode=_choice(api_cfg, "status_mode", base.status_mode, STATUS_MODES),
        response_mode=_choice(api_cfg, "response_mode", base.response_mode, RESPONSE_MODES),
        auth_scheme=_choice(api_cfg, "auth_scheme", base.auth_scheme, AUTH_SCHEMES),
        success_check=_choice(api_cfg, "success_check", base.success_check, SUCCESS_CHECKS),
        timeout=float(api_cfg.get("timeout", base.timeout)),
    )

    poll_base = PollingSettings()
    polling = PollingSettings(
        interval=float(poll_cfg.get("interval", poll_base.interval)),
        max_attempts=_limit(poll_cfg.get("max_attempts", poll_base.max_attempts)),
        max_wait=_limit(poll_cfg.get("max_wait", poll_base.max_wait)),
    )

    defaults = DefaultsSettings(**{
        key: value for key, value in defaults_cfg.items()
        if key in DefaultsSettings.__dataclass_fields__
    })

    settings = Settings(api=api, polling=polling, defaults=defaults)
    if "path" in cred_cfg:
        settings.credentials_path = Path(cred_cfg["path"])
    if "key" in cred_cfg:
        settings.credentials_key = cred_cfg["key"]
    if "dir" in output_cfg:
        settings.output_dir = Path(output_cfg["dir"])
    return settings


def load_config(config_path: str | Path | None = None) -> dict:
    """Load and return the raw configuration dictionary.

    Args:
        config_path: Path to config.yaml. Defaults to ./config.yaml.

    Raises:
        FileNotFoundError: If config file doesn't exist.
    """
    path = Path(config_path or _DEFAULT_CONFIG)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load config.yaml and return typed settings.

    A missing default config file yields the built-in defaults; an explicitly
    requested file that does not exist raises FileNotFoundError.
    """
    if config_path is None and not Path(_DEFAULT_CONFIG).exists():
        return Settings()
    return settings_from_dict(load_config(config_path))
