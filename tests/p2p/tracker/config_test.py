from __future__ import annotations

import logging
import pathlib

import pytest
from pydantic import ValidationError

from swarmlink.p2p.tracker.config import TrackerServingConfig


def test_read_from_config_file_empty(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'tracker.toml'
    filepath.write_text('')

    config = TrackerServingConfig.from_toml(filepath)
    assert config == TrackerServingConfig()
    assert config.port == 8000
    assert config.logging.default_level == logging.INFO


def test_read_from_config_file(tmp_path: pathlib.Path) -> None:
    data = """\
host = "localhost"
port = 9000
announce_interval = 60
max_message_bytes = 1024

[logging]
log_dir = "/path/to/logs"
default_level = "DEBUG"
websockets_level = "ERROR"
current_swarms_interval = 30
"""
    filepath = tmp_path / 'tracker.toml'
    filepath.write_text(data)

    config = TrackerServingConfig.from_toml(filepath)
    assert config.host == 'localhost'
    assert config.port == 9000
    assert config.announce_interval == 60
    assert config.max_message_bytes == 1024
    assert config.logging.log_dir == '/path/to/logs'
    assert config.logging.default_level == 'DEBUG'
    assert config.logging.websockets_level == 'ERROR'
    assert config.logging.current_swarms_interval == 30


def test_invalid_config() -> None:
    with pytest.raises(ValidationError):
        TrackerServingConfig(announce_interval=0)
    with pytest.raises(ValidationError):
        TrackerServingConfig(unknown=True)
