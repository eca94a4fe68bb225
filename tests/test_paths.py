from pathlib import Path

from toolgate import paths


def test_get_toolgate_home_defaults(monkeypatch):
    monkeypatch.delenv("TOOLGATE_HOME", raising=False)
    home = paths.get_toolgate_home()
    assert home.name == ".toolgate"


def test_get_toolgate_home_env(monkeypatch, tmp_path: Path):
    target = tmp_path / "custom"
    monkeypatch.setenv("TOOLGATE_HOME", str(target))
    assert paths.get_toolgate_home() == target


def test_sessions_root(tmp_path: Path, _isolate_toolgate_home: Path):
    assert paths.sessions_root(tmp_path) == tmp_path / "sessions"
    assert paths.sessions_root() == _isolate_toolgate_home / "sessions"
