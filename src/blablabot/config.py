from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .cursor import DEFAULT_CURSOR_FILENAME
from .logging import LOG_LEVELS
from .telegram.client import DEFAULT_SERVER_URL
from .telegram.loop import DEFAULT_POLL_TIMEOUT_S

# Environment variable names for secrets
ENV_BOT_TOKEN = "BLABLABOT_BOT_TOKEN"
ENV_BOT_NAME = "BLABLABOT_BOT_NAME"

LOCAL_CONFIG_NAME = Path(".blablabot") / "blablabot.toml"
HOME_CONFIG_PATH = Path.home() / ".blablabot" / "blablabot.toml"


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class BotSettings:
    bot_token: str
    bot_name: str
    server_url: str = DEFAULT_SERVER_URL
    poll_timeout: int = DEFAULT_POLL_TIMEOUT_S
    cursor_path: Path = Path(DEFAULT_CURSOR_FILENAME)
    lenient_optional: bool = False
    max_restarts: int | None = None
    log_level: str = "info"


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

    raise ConfigError(
        f"Missing blablabot config. Create {LOCAL_CONFIG_NAME} or {HOME_CONFIG_PATH}."
    )


def _read_first_word(path: Path, key: str, config_path: Path) -> str:
    try:
        words = path.read_text(encoding="utf-8").split()
    except OSError as e:
        raise ConfigError(f"Failed to read `{key}` {path}: {e}") from e
    if not words:
        raise ConfigError(f"`{key}` {path} from {config_path} is empty.")
    return words[0]


def _resolve_path(value: str, config_path: Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = config_path.parent / path
    return path


def _get_secret(
    config: dict, config_path: Path, *, key: str, env: str
) -> str:
    env_value = os.environ.get(env)
    if env_value and env_value.strip():
        return env_value.strip()

    file_key = f"{key}_file"
    if key not in config and file_key in config:
        file_value = config[file_key]
        if not isinstance(file_value, str) or not file_value.strip():
            raise ConfigError(
                f"Invalid `{file_key}` in {config_path}; expected a non-empty string."
            )
        return _read_first_word(
            _resolve_path(file_value.strip(), config_path), file_key, config_path
        )

    try:
        value = config[key]
    except KeyError:
        raise ConfigError(
            f"Missing `{key}`. Set {env} environment variable "
            f"or add `{key}` (or `{file_key}`) to {config_path}."
        ) from None

    if not isinstance(value, str) or not value.strip():
        raise ConfigError(
            f"Invalid `{key}` in {config_path}; expected a non-empty string."
        )
    return value.strip()


def get_bot_token(config: dict, config_path: Path) -> str:
    """Get bot token from environment variable or config file.

    Environment variable BLABLABOT_BOT_TOKEN takes precedence over config file.
    """
    return _get_secret(config, config_path, key="bot_token", env=ENV_BOT_TOKEN)


def get_bot_name(config: dict, config_path: Path) -> str:
    return _get_secret(config, config_path, key="bot_name", env=ENV_BOT_NAME)


def _get_int(
    config: dict, config_path: Path, key: str, default: int | None
) -> int | None:
    value: Any = config.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(
            f"Invalid `{key}` in {config_path}; expected a non-negative integer."
        )
    return value


def parse_settings(config: dict, config_path: Path) -> BotSettings:
    server_url = config.get("server_url", DEFAULT_SERVER_URL)
    if not isinstance(server_url, str) or not server_url.startswith(
        ("http://", "https://")
    ):
        raise ConfigError(
            f"Invalid `server_url` in {config_path}; expected an http(s) URL."
        )

    cursor_value = config.get("cursor_path", DEFAULT_CURSOR_FILENAME)
    if not isinstance(cursor_value, str) or not cursor_value.strip():
        raise ConfigError(
            f"Invalid `cursor_path` in {config_path}; expected a non-empty string."
        )

    lenient_optional = config.get("lenient_optional", False)
    if not isinstance(lenient_optional, bool):
        raise ConfigError(
            f"Invalid `lenient_optional` in {config_path}; expected true or false."
        )

    log_level = config.get("log_level", "info")
    if not isinstance(log_level, str) or log_level.lower() not in LOG_LEVELS:
        names = ", ".join(LOG_LEVELS)
        raise ConfigError(
            f"Invalid `log_level` in {config_path}; expected one of: {names}."
        )

    poll_timeout = _get_int(config, config_path, "poll_timeout", DEFAULT_POLL_TIMEOUT_S)

    return BotSettings(
        bot_token=get_bot_token(config, config_path),
        bot_name=get_bot_name(config, config_path),
        server_url=server_url,
        poll_timeout=DEFAULT_POLL_TIMEOUT_S if poll_timeout is None else poll_timeout,
        cursor_path=_resolve_path(cursor_value.strip(), config_path),
        lenient_optional=lenient_optional,
        max_restarts=_get_int(config, config_path, "max_restarts", None),
        log_level=log_level.lower(),
    )


def load_settings(path: str | Path | None = None) -> tuple[BotSettings, Path]:
    config, config_path = load_config(path)
    return parse_settings(config, config_path), config_path
