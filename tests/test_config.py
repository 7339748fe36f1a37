"""Configuration loading: YAML, ${VAR} interpolation and validation."""

import pytest
from pydantic import ValidationError

from minibot_hub.config import AppConfig, BroadcastConfig, load_config
from minibot_hub.storage.crypto import TokenCipher


def _write(tmp_path, text: str):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_env_interpolation(self, tmp_path, monkeypatch):
        key = TokenCipher.generate_key()
        monkeypatch.setenv("MINIBOT_TEST_KEY", key)
        monkeypatch.setenv("MINIBOT_TEST_TOKEN", "123456789:" + "A" * 35)
        path = _write(
            tmp_path,
            "main_bot:\n"
            "  token: ${MINIBOT_TEST_TOKEN}\n"
            "  creator_id: 42\n"
            "security:\n"
            "  encryption_key: ${MINIBOT_TEST_KEY}\n",
        )
        config = load_config(path, tmp_path / "missing.env")
        assert config.security.encryption_key == key
        assert config.main_bot.token.startswith("123456789:")
        assert config.main_bot.creator_id == 42

    def test_data_dir_placeholder(self, tmp_path):
        path = _write(
            tmp_path,
            f"data_dir: {tmp_path}/state\n"
            "security:\n"
            "  encryption_key: k\n"
            "storage:\n"
            "  db_path: ${data_dir}/hub.db\n",
        )
        config = load_config(path, tmp_path / "missing.env")
        assert config.storage.db_path == f"{tmp_path}/state/hub.db"

    def test_dotenv_file_is_read(self, tmp_path, monkeypatch):
        # Registers the variable for removal once the test ends
        monkeypatch.setenv("MINIBOT_DOTENV_KEY", "placeholder")
        monkeypatch.delenv("MINIBOT_DOTENV_KEY")
        env = tmp_path / ".env"
        env.write_text("MINIBOT_DOTENV_KEY=from-dotenv\n", encoding="utf-8")
        path = _write(tmp_path, "security:\n  encryption_key: ${MINIBOT_DOTENV_KEY}\n")
        config = load_config(path, env)
        assert config.security.encryption_key == "from-dotenv"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml", tmp_path / "missing.env")

    def test_encryption_key_is_required(self, tmp_path):
        path = _write(tmp_path, "log_level: DEBUG\n")
        with pytest.raises(ValidationError):
            load_config(path, tmp_path / "missing.env")


class TestDefaults:
    def test_runtime_defaults(self):
        config = AppConfig(security={"encryption_key": "k"})
        assert config.sessions.ttl_seconds == 1800
        assert config.runtime.max_init_attempts == 5
        assert config.runtime.ack_delete_after == 5.0
        assert config.broadcast.progress_every == 10
        assert config.broadcast.pause_every == 30

    def test_broadcast_intervals_must_be_positive(self):
        with pytest.raises(ValidationError):
            BroadcastConfig(progress_every=0)
        with pytest.raises(ValidationError):
            BroadcastConfig(pause_every=0)
