"""Tests for the command-line entry point."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from monagent.main import main

VALID = """\
monitors:
  web:
    type: http
    schedule: '*/5 * * * *'
    target:
      url: http://localhost:8080/health
  ssh:
    type: tcp
    schedule: '0 * * * *'
    enabled: false
    target: {host: localhost, port: 22}
"""

INVALID = """\
monitors:
  web:
    type: http
    schedule: 'every five minutes'
    target: {}
"""


@pytest.fixture
def valid_file(tmp_path: Path) -> Path:
    path = tmp_path / "monitors.yaml"
    path.write_text(VALID)
    return path


@pytest.fixture
def invalid_file(tmp_path: Path) -> Path:
    path = tmp_path / "broken.yaml"
    path.write_text(INVALID)
    return path


class TestValidate:
    def test_valid(self, valid_file: Path, capsys) -> None:
        main(["validate", "-c", str(valid_file)])
        out = capsys.readouterr().out
        assert "web" in out
        assert "ssh" in out
        assert "2 monitors" in out

    def test_invalid_exits_2(self, invalid_file: Path, capsys) -> None:
        with pytest.raises(SystemExit) as exc:
            main(["validate", "-c", str(invalid_file)])
        assert exc.value.code == 2
        out = capsys.readouterr().out
        assert "invalid schedule" in out
        assert "missing required field 'url'" in out

    def test_missing_file_exits_2(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc:
            main(["validate", "-c", str(tmp_path / "absent.yaml")])
        assert exc.value.code == 2


class TestServe:
    def test_serve_starts_uvicorn(self, valid_file: Path) -> None:
        with patch("monagent.main.uvicorn.run") as run:
            main(["--log-level", "debug", "serve", "-c", str(valid_file), "--port", "9123"])
        run.assert_called_once()
        assert run.call_args.kwargs["host"] == "127.0.0.1"
        assert run.call_args.kwargs["port"] == 9123
        app = run.call_args.args[0]
        assert app.state.registry.current.ids == ["web", "ssh"]
        assert app.state.config_path == str(valid_file)

    def test_serve_refuses_invalid_config(self, invalid_file: Path) -> None:
        with patch("monagent.main.uvicorn.run") as run:
            with pytest.raises(SystemExit) as exc:
                main(["serve", "-c", str(invalid_file)])
        assert exc.value.code == 2
        run.assert_not_called()


class TestNoCommand:
    def test_prints_help(self) -> None:
        with pytest.raises(SystemExit) as exc:
            main([])
        assert exc.value.code == 1
