from pathlib import Path
from types import SimpleNamespace

import pytest

from adm.config import AdmSettings, cli_overrides_from_args


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("ADM_LOG_LEVEL", "ADM_BATCH_WORKERS", "ADM_INCLUDE_SOUNDCHECK", "ADM_TEMP_DIR"):
        monkeypatch.delenv(key, raising=False)


def test_defaults_when_file_missing(tmp_path):
    cfg = AdmSettings.load(config_path=tmp_path / "missing.toml")
    assert cfg.interactive_workers == 4
    assert cfg.batch_workers == 12
    assert cfg.include_soundcheck is True
    assert cfg.use_output_folder is False
    assert cfg.encoder_bin == "afconvert"
    assert cfg.config_path == tmp_path / "missing.toml"


def test_toml_then_env_then_overrides(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text('batch_workers = 6\nlog_level = "DEBUG"\ninclude_soundcheck = false\n')

    cfg = AdmSettings.load(config_path=path)
    assert (cfg.batch_workers, cfg.log_level, cfg.include_soundcheck) == (6, "DEBUG", False)

    monkeypatch.setenv("ADM_BATCH_WORKERS", "8")
    cfg = AdmSettings.load(config_path=path)
    assert cfg.batch_workers == 8
    assert cfg.log_level == "DEBUG"

    cfg = AdmSettings.load(config_path=path, overrides={"batch_workers": 2, "log_level": None})
    assert cfg.batch_workers == 2
    assert cfg.log_level == "DEBUG"


def test_worker_counts_must_be_positive(tmp_path):
    with pytest.raises(ValueError):
        AdmSettings.load(config_path=tmp_path / "none.toml", overrides={"interactive_workers": 0})


def test_write_round_trips_without_nulls(tmp_path):
    cfg = AdmSettings.load(config_path=tmp_path / "none.toml", overrides={"batch_workers": 3})
    text = cfg.to_toml()
    assert "config_path" not in text
    assert "temp_dir" not in text

    written = cfg.write(tmp_path / "nested" / "config.toml")
    assert written.exists()
    again = AdmSettings.load(config_path=written)
    assert again.batch_workers == 3


def test_resolved_temp_dir(tmp_path):
    assert AdmSettings(temp_dir=str(tmp_path)).resolved_temp_dir() == tmp_path
    assert AdmSettings().resolved_temp_dir().name == "adm-convert"


def test_cli_overrides_pick_known_keys():
    args = SimpleNamespace(log_level="WARNING", include_soundcheck=None, paths=["x"], cmd="convert")
    assert cli_overrides_from_args(args) == {"log_level": "WARNING", "include_soundcheck": None}
