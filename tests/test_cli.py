import json
import logging
import os
import textwrap
from pathlib import Path

import pytest

from appdeb import util
from appdeb.commands.appdeb_cmd import __main__ as appdeb_cmd
from appdeb.exceptions import PackageIOError
from appdeb.lintian import LintianResult, LintianStatus

from tutil import read_ar_archive, requires_compressors


@pytest.fixture(autouse=True)
def restore_logging(monkeypatch):
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    record_factory = logging.getLogRecordFactory()
    for attr in ("_DEFAULT_LOGGER", "_STDOUT_HANDLER", "_STDERR_HANDLER", "_LOGGING_SET_UP"):
        monkeypatch.setattr(util, attr, getattr(util, attr))
    monkeypatch.setenv("APPDEB_COLORS", "never")
    yield
    for handler in list(root_logger.handlers):
        if handler not in handlers:
            root_logger.removeHandler(handler)
    root_logger.setLevel(level)
    logging.setLogRecordFactory(record_factory)


@pytest.fixture()
def options_file(tmp_path: Path) -> Path:
    path = tmp_path / "options.yaml"
    path.write_text(
        textwrap.dedent(
            """\
        name: footest
        productName: Foo Test
        version: 1.0.0
        architecture: amd64
        maintainer: Foo Bar <foo@example.com>
        description: Just a test.
        compression: gzip
        """
        )
    )
    return path


def _args(app_source: Path, dest_dir: Path, options_file: Path, *extra: str):
    return [
        str(app_source),
        str(dest_dir),
        "--options",
        str(options_file),
        "--source-date-epoch",
        "1668973695",
        *extra,
    ]


@requires_compressors
@pytest.mark.usefixtures("supported_umask")
def test_cli_build(tmp_path: Path, app_source: Path, options_file: Path, capsys) -> None:
    dest_dir = tmp_path / "dest"
    dest_dir.mkdir()
    appdeb_cmd.main(_args(app_source, dest_dir, options_file))
    deb_file = dest_dir / "footest_1.0.0_amd64.deb"
    entries = read_ar_archive(deb_file)
    assert [e.name for e in entries] == ["debian-binary", "control.tar.gz", "data.tar.gz"]
    assert {e.mtime for e in entries} == {1668973695}
    assert f"Generated {deb_file}" in capsys.readouterr().out


def test_cli_missing_options_file(tmp_path: Path, app_source: Path, capsys) -> None:
    with pytest.raises(SystemExit) as e:
        appdeb_cmd.main(_args(app_source, tmp_path, tmp_path / "missing.yaml"))
    assert e.value.code == 1
    assert "The options file" in capsys.readouterr().err


def test_cli_debug_reraises(tmp_path: Path, app_source: Path) -> None:
    with pytest.raises(PackageIOError):
        appdeb_cmd.main(_args(app_source, tmp_path, tmp_path / "missing.yaml", "--debug"))


def test_cli_without_any_metadata(tmp_path: Path, app_source: Path, capsys) -> None:
    with pytest.raises(SystemExit) as e:
        appdeb_cmd.main([str(app_source), str(tmp_path)])
    assert e.value.code == 1
    assert "Package name must be at least two characters" in capsys.readouterr().err


@requires_compressors
@pytest.mark.usefixtures("supported_umask")
def test_cli_options_from_app_metadata(tmp_path: Path, app_source: Path) -> None:
    metadata = app_source / "resources" / "app" / "package.json"
    metadata.parent.mkdir(parents=True)
    metadata.write_text(
        json.dumps(
            {
                "name": "footest",
                "version": "1.0.0",
                "description": "Just a test.",
                "author": {"name": "Foo Bar", "email": "foo@example.com"},
            }
        )
    )
    dest_dir = tmp_path / "dest"
    dest_dir.mkdir()
    options_file = tmp_path / "options.yaml"
    options_file.write_text("arch: i386\n")
    appdeb_cmd.main(_args(app_source, dest_dir, options_file))
    assert os.listdir(dest_dir) == ["footest_1.0.0_i386.deb"]


@requires_compressors
@pytest.mark.usefixtures("supported_umask")
@pytest.mark.parametrize(
    "result,expected_message",
    [
        (
            LintianResult(LintianStatus.TOOL_MISSING),
            "Your system is missing the lintian package",
        ),
        (
            LintianResult(
                LintianStatus.UNEXPECTED_TAGS,
                ("W: footest: binary-without-manpage usr/bin/footest",),
            ),
            "lintian reported 1 unexpected tag(s)",
        ),
    ],
)
def test_cli_lintian_failures(
    tmp_path: Path,
    app_source: Path,
    options_file: Path,
    monkeypatch,
    capsys,
    result: LintianResult,
    expected_message: str,
) -> None:
    monkeypatch.setattr(appdeb_cmd, "run_lintian", lambda deb_file: result)
    dest_dir = tmp_path / "dest"
    dest_dir.mkdir()
    with pytest.raises(SystemExit) as e:
        appdeb_cmd.main(_args(app_source, dest_dir, options_file, "--lintian"))
    assert e.value.code == 1
    assert expected_message in capsys.readouterr().err


@requires_compressors
@pytest.mark.usefixtures("supported_umask")
def test_cli_lintian_clean(
    tmp_path: Path,
    app_source: Path,
    options_file: Path,
    monkeypatch,
    capsys,
) -> None:
    monkeypatch.setattr(
        appdeb_cmd, "run_lintian", lambda deb_file: LintianResult(LintianStatus.CLEAN)
    )
    dest_dir = tmp_path / "dest"
    dest_dir.mkdir()
    appdeb_cmd.main(_args(app_source, dest_dir, options_file, "--lintian"))
    assert "lintian found no issues" in capsys.readouterr().out
