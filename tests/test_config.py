# tests/test_config.py
from cometapp.main import build_cache
from cometapp.utils.config import AttrDict, load_config


def test_packaged_defaults():
    cfg = load_config()
    assert isinstance(cfg, AttrDict)
    assert cfg.target.designation == "C/2025 N1"
    assert cfg.providers.cobs.per_minute == 60
    assert cfg.providers.jpl_horizons.per_minute == 20
    assert cfg.providers.theskylive.per_minute == 30
    assert cfg.cache.policies["comet-data"]["max_age"] == 300


def test_overrides_merge_deeply():
    cfg = load_config(overrides={"providers": {"cobs": {"timeout_s": 2.5}}})
    assert cfg.providers.cobs.timeout_s == 2.5
    assert cfg.providers.cobs.base_url.startswith("https://cobs.si")


def test_yaml_file_layer(tmp_path, monkeypatch):
    path = tmp_path / "site.yaml"
    path.write_text("consistency:\n  magnitude_tolerance: 0.8\n", encoding="utf-8")
    monkeypatch.setenv("COMET_CONFIG", str(path))
    cfg = load_config()
    assert cfg.consistency.magnitude_tolerance == 0.8
    assert cfg.consistency.position_tolerance_arcsec == 5.0


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("COMET_CACHE_DIR", str(tmp_path))
    monkeypatch.setenv("COMET_CACHE_PERSIST", "0")
    monkeypatch.setenv("COMET_CACHE_SCHEMA", "4")
    monkeypatch.setenv("COMET_JPL_HORIZONS_TIMEOUT_S", "3")
    cfg = load_config()
    assert cfg.cache.dir == str(tmp_path)
    assert cfg.cache.persist is False
    assert cfg.cache.schema_version == 4
    assert cfg.providers.jpl_horizons.timeout_s == 3.0


def test_build_cache_from_config(tmp_path, monkeypatch):
    monkeypatch.setenv("COMET_CACHE_SCHEMA", "2")
    cfg = load_config(overrides={"cache": {"dir": str(tmp_path), "persist": True}})
    cache = build_cache(cfg)
    assert cache.persistent
    assert cache.policy_for("cobs:3I").schema_version == 2
    assert cache.policy_for("comet-data").stale_window == 172800.0

    cfg = load_config(overrides={"cache": {"persist": False}})
    assert not build_cache(cfg).persistent
