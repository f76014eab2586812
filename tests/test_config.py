import pytest

from devhelper.config import RootConfig, load_config, parse_config
from devhelper.registry import ModelRegistry

YAML = """
app:
  title: Helper
  port: 9000
  gpu_index: null
  log_level: debug
  default_model: small
generation:
  temperature: 0.2
models:
  - key: tiny
    display_name: Tiny
    local_path: /models/tiny
  - key: small
    local_path: /models/small
    compression: 4bit
"""


def test_load_config(tmp_path):
    path = tmp_path / "devhelper.yaml"
    path.write_text(YAML, encoding="utf-8")

    cfg = load_config(str(path))

    assert cfg.app.title == "Helper"
    assert cfg.app.port == 9000
    assert cfg.app.gpu_index is None
    assert cfg.app.log_level == "debug"
    assert cfg.app.host == "127.0.0.1"
    assert cfg.generation.temperature == 0.2
    assert cfg.generation.max_tokens == 1000
    assert [m.key for m in cfg.models] == ["tiny", "small"]
    assert cfg.models[1].display_name == "small"
    assert cfg.models[1].compression == "4bit"


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    cfg = load_config(str(path))

    assert cfg == RootConfig()
    assert cfg.generation.temperature == 0.7
    assert cfg.generation.max_tokens == 1000
    assert cfg.app.title == "Dev Helper Agent"


def test_malformed_sections_fall_back():
    cfg = parse_config({"app": "nonsense", "models": {"not": "a list"}})
    assert cfg.app.port == 7860
    assert cfg.models == []


def test_registry_lookup():
    cfg = parse_config({"models": [{"key": "a", "local_path": "/a"}, {"key": "b", "local_path": "/b"}]})
    registry = ModelRegistry(cfg.models)

    assert registry.keys() == ["a", "b"]
    assert registry.get("b").local_path == "/b"
    assert registry.default_key() == "a"
    assert registry.default_key("b") == "b"
    assert registry.default_key("missing") == "a"
    with pytest.raises(KeyError):
        registry.get("c")
    assert ModelRegistry([]).default_key() is None
