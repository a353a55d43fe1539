"""Forge compile step, with the forge process mocked."""

import io
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from eth_migrate.forge import ForgeFailed, compile_contracts


def make_process(return_code: int, stdout=b"", stderr=b"") -> MagicMock:
    proc = MagicMock()
    proc.wait.return_value = return_code
    proc.stdout = io.BytesIO(stdout)
    proc.stderr = io.BytesIO(stderr)
    return proc


@patch("eth_migrate.forge.which", return_value="/usr/local/bin/forge")
def test_compile(which, tmp_path):
    with patch("eth_migrate.forge.psutil.Popen", return_value=make_process(0, b"Compiler run successful")) as popen:
        output = compile_contracts(tmp_path, tmp_path / "out")

    assert output == "Compiler run successful"
    cmd_line = popen.call_args[0][0]
    assert cmd_line == ["/usr/local/bin/forge", "build", "--root", str(tmp_path), "--out", str(tmp_path / "out")]


@patch("eth_migrate.forge.which", return_value="/usr/local/bin/forge")
def test_compile_force(which, tmp_path):
    with patch("eth_migrate.forge.psutil.Popen", return_value=make_process(0)) as popen:
        compile_contracts(tmp_path, tmp_path / "out", force=True)

    assert popen.call_args[0][0][-1] == "--force"


@patch("eth_migrate.forge.which", return_value="/usr/local/bin/forge")
def test_compile_failed(which, tmp_path):
    proc = make_process(1, stderr=b"Error: Compiler run failed")
    with patch("eth_migrate.forge.psutil.Popen", return_value=proc):
        with pytest.raises(ForgeFailed, match="Compiler run failed"):
            compile_contracts(tmp_path, tmp_path / "out")


@patch("eth_migrate.forge.which", return_value=None)
def test_no_forge(which, tmp_path):
    with pytest.raises(AssertionError, match="No forge command"):
        compile_contracts(tmp_path, tmp_path / "out")


def test_paths_only():
    with pytest.raises(AssertionError):
        compile_contracts("contracts", Path("out"))
