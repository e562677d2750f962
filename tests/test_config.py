import textwrap

from skyfriction.utils.config import load_config


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("SKYF_STORAGE", raising=False)
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg.storage.backend == "memory"
    assert cfg.batch.pinned_limit == 5
    assert cfg.horizons["step"] == "60m"
    assert cfg.text.templates is None


def test_yaml_merges_over_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("SKYF_STORAGE", raising=False)
    p = tmp_path / "cfg.yaml"
    p.write_text(textwrap.dedent("""
        batch:
          max_workers: 4
        text:
          templates:
            LOW: [[100, "Calm.", "Carry on."]]
    """))
    cfg = load_config(str(p))
    assert cfg.batch.max_workers == 4
    assert cfg.batch.pinned_limit == 5
    assert cfg.text.templates["LOW"] == [[100, "Calm.", "Carry on."]]


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("SKYF_STORAGE", "sqlite")
    monkeypatch.setenv("SKYF_DB_PATH", str(tmp_path / "x.sqlite3"))
    monkeypatch.setenv("SKYF_HORIZONS_TIMEOUT_S", "7.5")
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg.storage.backend == "sqlite"
    assert cfg.storage.db_path.endswith("x.sqlite3")
    assert cfg.horizons.timeout_s == 7.5
    assert cfg.auth.cron_secret == "s3cret"
