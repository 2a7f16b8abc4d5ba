from __future__ import annotations

import io
import pathlib

import pytest
from pydantic import BaseModel
from pydantic import ValidationError

from swarmlink.utils.config import dump
from swarmlink.utils.config import dumps
from swarmlink.utils.config import load
from swarmlink.utils.config import load_path
from swarmlink.utils.config import loads


class _Section(BaseModel):
    level: str = 'INFO'
    path: str | None = None


class _Config(BaseModel):
    name: str
    count: int = 1
    ratio: float = 0.5
    urls: list[str] = []
    section: _Section = _Section()


def test_dumps_loads() -> None:
    config = _Config(name='test', urls=['ws://localhost'])
    data = dumps(config)
    assert 'path' not in data
    assert loads(_Config, data) == config


def test_dumps_include_none() -> None:
    config = _Config(name='test', section=_Section(path=None))
    # TOML has no null so including None values fails to serialize.
    with pytest.raises(TypeError):
        dumps(config, exclude_none=False)


def test_dump_load() -> None:
    config = _Config(name='test', count=3, section=_Section(path='/tmp/x'))
    buffer = io.BytesIO()
    dump(config, buffer)
    buffer.seek(0)
    assert load(_Config, buffer) == config


def test_load_path(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'config.toml'
    filepath.write_text('name = "test"\n\n[section]\nlevel = "DEBUG"\n')

    config = load_path(_Config, filepath)
    assert config.name == 'test'
    assert config.count == 1
    assert config.section.level == 'DEBUG'


def test_loads_is_strict() -> None:
    with pytest.raises(ValidationError):
        loads(_Config, 'name = "test"\ncount = "3"\n')
