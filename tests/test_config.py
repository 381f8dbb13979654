from pathlib import Path

import pytest

from blablabot.config import (
    ENV_BOT_NAME,
    ENV_BOT_TOKEN,
    BotSettings,
    ConfigError,
    get_bot_token,
    load_config,
    load_settings,
    parse_settings,
)
from blablabot.cursor import DEFAULT_CURSOR_FILENAME
from blablabot.telegram.client import DEFAULT_SERVER_URL
from blablabot.telegram.loop import DEFAULT_POLL_TIMEOUT_S


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(ENV_BOT_TOKEN, raising=False)
    monkeypatch.delenv(ENV_BOT_NAME, raising=False)


class TestLoadConfig:
    def test_load_from_explicit_path(self, tmp_path: Path) -> None:
        config_file = tmp_path / "config.toml"
        config_file.write_text('bot_token = "test123"')

        config, path = load_config(config_file)

        assert config["bot_token"] == "test123"
        assert path == config_file

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Missing config file"):
            load_config(tmp_path / "nonexistent.toml")

    def test_malformed_toml_raises(self, tmp_path: Path) -> None:
        bad_file = tmp_path / "bad.toml"
        bad_file.write_text("invalid = [unclosed")

        with pytest.raises(ConfigError, match="Malformed TOML"):
            load_config(bad_file)

    def test_path_exists_but_is_directory(self, tmp_path: Path) -> None:
        dir_path = tmp_path / "config_dir"
        dir_path.mkdir()

        with pytest.raises(ConfigError, match="Failed to read config file"):
            load_config(dir_path)


class TestSecrets:
    def test_env_overrides_config(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv(ENV_BOT_TOKEN, " 1:env ")
        token = get_bot_token({"bot_token": "1:file"}, tmp_path / "b.toml")
        assert token == "1:env"

    def test_token_file_relative_to_config(self, tmp_path: Path) -> None:
        (tmp_path / "token.txt").write_text("1:secret\nignored\n")
        token = get_bot_token({"bot_token_file": "token.txt"}, tmp_path / "b.toml")
        assert token == "1:secret"

    def test_empty_token_file_raises(self, tmp_path: Path) -> None:
        (tmp_path / "token.txt").write_text("  \n")
        with pytest.raises(ConfigError, match="is empty"):
            get_bot_token({"bot_token_file": "token.txt"}, tmp_path / "b.toml")

    def test_missing_token_names_env_var(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match=ENV_BOT_TOKEN):
            get_bot_token({}, tmp_path / "b.toml")

    def test_blank_token_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Invalid `bot_token`"):
            get_bot_token({"bot_token": "  "}, tmp_path / "b.toml")


class TestParseSettings:
    def test_defaults(self, tmp_path: Path) -> None:
        config_path = tmp_path / "blablabot.toml"
        settings = parse_settings(
            {"bot_token": "1:abc", "bot_name": "blablabot"}, config_path
        )

        assert settings == BotSettings(
            bot_token="1:abc",
            bot_name="blablabot",
            server_url=DEFAULT_SERVER_URL,
            poll_timeout=DEFAULT_POLL_TIMEOUT_S,
            cursor_path=tmp_path / DEFAULT_CURSOR_FILENAME,
            lenient_optional=False,
            max_restarts=None,
        )

    def test_all_options(self, tmp_path: Path) -> None:
        settings = parse_settings(
            {
                "bot_token": "1:abc",
                "bot_name": "blablabot",
                "server_url": "http://localhost:8081/",
                "poll_timeout": 5,
                "cursor_path": "/var/lib/blablabot/cursor.txt",
                "lenient_optional": True,
                "max_restarts": 3,
                "log_level": "Warning",
            },
            tmp_path / "blablabot.toml",
        )

        assert settings.server_url == "http://localhost:8081/"
        assert settings.poll_timeout == 5
        assert settings.cursor_path == Path("/var/lib/blablabot/cursor.txt")
        assert settings.lenient_optional is True
        assert settings.max_restarts == 3
        assert settings.log_level == "warning"

    @pytest.mark.parametrize(
        ("key", "value"),
        [
            ("server_url", "ftp://example.com"),
            ("server_url", 5),
            ("cursor_path", ""),
            ("lenient_optional", "yes"),
            ("poll_timeout", -1),
            ("poll_timeout", True),
            ("max_restarts", "3"),
            ("log_level", "loud"),
            ("log_level", 3),
        ],
    )
    def test_invalid_values(self, tmp_path: Path, key: str, value) -> None:
        config = {"bot_token": "1:abc", "bot_name": "blablabot", key: value}
        with pytest.raises(ConfigError, match=f"`{key}`"):
            parse_settings(config, tmp_path / "blablabot.toml")

    def test_missing_bot_name(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="bot_name"):
            parse_settings({"bot_token": "1:abc"}, tmp_path / "blablabot.toml")


def test_load_settings_from_file(tmp_path: Path) -> None:
    config_file = tmp_path / "blablabot.toml"
    config_file.write_text(
        'bot_token = "1:abc"\nbot_name = "blablabot"\ncursor_path = "state/id.txt"\n'
    )

    settings, path = load_settings(config_file)

    assert path == config_file
    assert settings.cursor_path == tmp_path / "state" / "id.txt"
