from pathlib import Path

import pytest

from imgpress.core.config import DEFAULT_BACKEND, ENV_KEYS, Settings, load_settings
from imgpress.core.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults():
    s = load_settings()
    assert s.backend == DEFAULT_BACKEND
    assert s.max_age_hours == 24.0
    assert s.cleanup_on_exit is True
    assert s.temp_path.name == "imgpress"


def test_yaml_then_env_then_overrides(tmp_path: Path, monkeypatch):
    cfg = tmp_path / "imgpress.yml"
    cfg.write_text(
        "temp_dir: {}\nrequest_timeout_s: 30\nmax_age_hours: 12\n"
        "backend: imgpress.core.backends:FixedRatioBackend\nbackend_params:\n  ratio: 0.25\n".format(tmp_path / "yaml"),
        encoding="utf-8",
    )
    monkeypatch.setenv("IMGPRESS_REQUEST_TIMEOUT_S", "45")
    monkeypatch.setenv("IMGPRESS_BACKEND_PARAMS_JSON", '{"tool": "env"}')
    s = load_settings(cfg, max_age_hours=1)
    assert s.temp_dir == str(tmp_path / "yaml")
    assert s.request_timeout_s == 45.0
    assert s.backend_params == {"tool": "env"}
    assert s.max_age_hours == 1.0
    assert s.backend.endswith(":FixedRatioBackend")


def test_none_overrides_are_ignored():
    s = load_settings(temp_dir=None, backend=None)
    assert s.backend == DEFAULT_BACKEND


@pytest.mark.parametrize(
    "overrides",
    [
        {"request_timeout_s": 0},
        {"handshake_timeout_s": -1},
        {"max_age_hours": -5},
        {"backend": "no_colon_here"},
        {"request_timeout_s": "soon"},
        {"not_a_setting": 1},
    ],
)
def test_invalid_settings_raise(overrides):
    with pytest.raises(ConfigError):
        load_settings(**overrides)


def test_bad_yaml_and_bad_env(tmp_path: Path, monkeypatch):
    cfg = tmp_path / "list.yml"
    cfg.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(cfg)
    with pytest.raises(ConfigError):
        load_settings(tmp_path / "missing.yml")
    monkeypatch.setenv("IMGPRESS_BACKEND_PARAMS_JSON", "{not json")
    with pytest.raises(ConfigError):
        load_settings()


def test_settings_is_plain_dataclass():
    s = Settings(temp_dir="/tmp/x")
    assert s.temp_path == Path("/tmp/x")
