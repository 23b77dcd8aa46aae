from __future__ import annotations

from pathlib import Path

import pytest

from odsync.mirror_cache import main as main_module


def test_flags_override_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ODSYNC_PORT", "9000")
    monkeypatch.setenv("ODSYNC_UPSTREAM_URL", "https://env.example/")
    args = main_module.parse_args(["--port", "8181", "--storage", str(tmp_path / "cache"), "--cache-size", "50"])

    settings = main_module.load_settings(args)

    assert settings.port == 8181
    assert settings.storage_path == tmp_path / "cache"
    assert settings.cache_size_mb == 50
    assert settings.upstream_url == "https://env.example"


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("ODSYNC_PORT", "ODSYNC_STORAGE_PATH", "ODSYNC_UPSTREAM_URL", "ODSYNC_CACHE_SIZE_MB"):
        monkeypatch.delenv(name, raising=False)

    settings = main_module.load_settings(main_module.parse_args([]))

    assert settings.port == 8080
    assert settings.storage_path == Path("./storage")
    assert settings.cache_size_mb == 10240
    assert settings.upstream_url == "https://mirrors.tuna.tsinghua.edu.cn"


def test_invalid_upstream_rejected() -> None:
    with pytest.raises(ValueError):
        main_module.load_settings(main_module.parse_args(["--upstream", "ftp://mirror.example"]))


def test_main_creates_storage_and_runs_server(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls = {}

    def fake_run(app, **kwargs):
        calls["app"] = app
        calls.update(kwargs)

    monkeypatch.setattr(main_module.uvicorn, "run", fake_run)
    storage = tmp_path / "nested" / "storage"

    main_module.main(["--storage", str(storage), "--port", "8099", "--upstream", "http://origin.test/mirror"])

    assert storage.is_dir()
    assert calls["port"] == 8099
    assert calls["host"] == "0.0.0.0"
    assert calls["log_config"] is None
    assert calls["app"].title == "FastAPI"


def test_main_exits_when_storage_unusable(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x")
    monkeypatch.setattr(main_module.uvicorn, "run", lambda *args, **kwargs: pytest.fail("server started"))

    with pytest.raises(SystemExit) as exc_info:
        main_module.main(["--storage", str(blocker / "storage")])

    assert exc_info.value.code == 1
