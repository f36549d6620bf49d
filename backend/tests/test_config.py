"""Tests for YAML settings loading and validation."""
import pytest
from pydantic import ValidationError

from chatbroker.chat.broker import ChatBroker
from chatbroker.config import AppConfig, RoomSettings, load_config


def test_defaults_when_file_missing(tmp_path):
    cfg = load_config(settings_path=tmp_path / "missing.yaml")
    assert cfg.rooms.default_rooms == ["general", "gaming", "movies", "music"]
    assert cfg.rooms.default_room == "general"
    assert cfg.rooms.idle_expiry_hours == 24
    assert cfg.rooms.idle_expiry_seconds == 24 * 60 * 60
    assert cfg.rooms.sweep_interval_seconds == 3600
    assert cfg.presence.avatar_count == 9
    assert cfg.presence.idle_after_seconds == 30


def test_load_from_yaml(tmp_path):
    settings_file = tmp_path / "chatbroker.settings.yaml"
    settings_file.write_text(
        "server:\n"
        "  port: 9000\n"
        "logging:\n"
        "  level: debug\n"
        "rooms:\n"
        "  default_rooms: [Lobby, ' Help ']\n"
        "  default_room: LOBBY\n"
        "  idle_expiry_hours: 1\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)

    assert cfg.server.port == 9000
    assert cfg.logging.level == "debug"
    assert cfg.rooms.default_rooms == ["lobby", "help"]
    assert cfg.rooms.default_room == "lobby"
    assert cfg.rooms.idle_expiry_seconds == 3600


def test_settings_path_from_environment(tmp_path, monkeypatch):
    settings_file = tmp_path / "custom.yaml"
    settings_file.write_text("presence:\n  avatar_count: 4\n", encoding="utf-8")
    monkeypatch.setenv("CHATBROKER_SETTINGS", str(settings_file))

    assert load_config().presence.avatar_count == 4


def test_empty_yaml_file(tmp_path):
    settings_file = tmp_path / "empty.yaml"
    settings_file.write_text("", encoding="utf-8")
    assert load_config(settings_path=settings_file) == AppConfig()


def test_default_room_must_be_permanent():
    with pytest.raises(ValidationError):
        RoomSettings(default_rooms=["general"], default_room="lobby")


def test_default_rooms_cannot_be_empty():
    with pytest.raises(ValidationError):
        RoomSettings(default_rooms=["  "], default_room="general")


def test_broker_from_config():
    cfg = AppConfig(rooms=RoomSettings(default_rooms=["lobby", "help"], default_room="lobby"))
    broker = ChatBroker.from_config(cfg)
    assert broker.directory.names() == ["lobby", "help"]
    assert broker.default_room == "lobby"
    assert broker.lifecycle.idle_expiry_seconds == 24 * 60 * 60
    assert broker.dispatcher.max_pending == 256
