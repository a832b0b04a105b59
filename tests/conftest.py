import os
from pathlib import Path
from typing import Any, Dict

import pytest

from appdeb.environment import BuildEnvironment

# Disable dpkg's translation layer.  It is very slow and disabling it makes it easier to debug
# test-failure reports from systems with translations active.
os.environ["DPKG_NLS"] = "0"

FIXED_MTIME = 1668973695


@pytest.fixture(autouse=True)
def no_source_date_epoch(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SOURCE_DATE_EPOCH", raising=False)


@pytest.fixture()
def build_env() -> BuildEnvironment:
    return BuildEnvironment(umask=0o022, source_date_epoch=FIXED_MTIME)


@pytest.fixture()
def base_options() -> Dict[str, Any]:
    return {
        "name": "footest",
        "productName": "Foo Test",
        "version": "1.0.0",
        "architecture": "amd64",
        "maintainer": "Foo Bar <foo@example.com>",
        "description": "Just a test.",
    }


@pytest.fixture()
def app_source(tmp_path: Path) -> Path:
    """A fake prebuilt application, laid out like an Electron app"""
    app = tmp_path / "app"
    (app / "resources").mkdir(parents=True)
    (app / "locales").mkdir()
    binary = app / "footest"
    binary.write_bytes(b"#!/bin/sh\necho hello\n")
    binary.chmod(0o755)
    (app / "chrome-sandbox").write_bytes(b"\x7fELF fake sandbox")
    (app / "chrome-sandbox").chmod(0o755)
    (app / "resources" / "app.asar").write_bytes(b"asar" * 100)
    (app / "resources" / "app.asar").chmod(0o600)
    (app / "locales" / "en-US.pak").write_bytes(b"pak")
    (app / "libfoo.so").write_bytes(b"\x7fELF fake library")
    os.symlink("libfoo.so", app / "libfoo.so.1")
    (app / "LICENSE").write_text("Copyright (c) Foo Bar\n\nPermission is granted.\n")
    return app


@pytest.fixture()
def supported_umask():
    old = os.umask(0o022)
    try:
        yield
    finally:
        os.umask(old)
