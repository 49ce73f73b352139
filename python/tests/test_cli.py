"""
Tests for the evisit-admin command line.
"""

import json
from unittest.mock import patch

import pytest

from conftest import CONFIG_PATH
from evisit import cli
from evisit.config_manager import ConfigManager
from evisit.services import build_codec


@pytest.fixture
def run(monkeypatch):
    """Invoke main() against the test config without touching log files."""
    monkeypatch.delenv("EVISIT_HMAC_SECRET", raising=False)
    monkeypatch.delenv("EVISIT_JWT_SECRET", raising=False)

    def invoke(*argv):
        with patch.object(cli, "configure_logging"):
            return cli.main(["--config", str(CONFIG_PATH), *argv])
    return invoke


class TestVerifyQr:
    """Tests for the verify-qr command"""

    def test_valid_payload(self, run, capsys):
        """A freshly issued payload verifies and exits 0."""
        codec = build_codec(ConfigManager(config_path=str(CONFIG_PATH), load_env=False))
        payload = codec.issue("3f2c9a4e-8d1b-4c6f-9e7a-2b5d8c1f0a93").payload

        assert run("verify-qr", payload) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["ok"] is True
        assert output["application_id"] == "3f2c9a4e-8d1b-4c6f-9e7a-2b5d8c1f0a93"

    def test_malformed_payload(self, run, capsys):
        """Garbage exits 2 with the failure reason."""
        assert run("verify-qr", "not-json") == 2
        output = json.loads(capsys.readouterr().out)
        assert output["ok"] is False
        assert output["failure"] is not None


class TestScreen:
    """Tests for the screen command"""

    def test_clean_identity(self, run, db, capsys):
        """A clean identity prints a zero score."""
        with patch.object(cli, "init_db", return_value=db):
            assert run("screen", "--national-id", "19900101001", "--phone", "+9647501234567") == 0
        output = json.loads(capsys.readouterr().out)
        assert output["risk_score"] == 0
        assert output["passed"] is True


class TestSweep:
    """Tests for the sweep-overstays command"""

    def test_empty_sweep(self, run, db, capsys):
        """A sweep over an empty database reports nothing flagged."""
        with patch.object(cli, "init_db", return_value=db):
            assert run("sweep-overstays") == 0
        output = json.loads(capsys.readouterr().out)
        assert output["candidates"] == 0
        assert output["flagged"] == []


class TestConfigErrors:
    """Tests for startup validation"""

    def test_short_secret_rejected(self, run, monkeypatch):
        """An unusable signing secret exits 3 before any work."""
        monkeypatch.setenv("EVISIT_HMAC_SECRET", "short")
        with patch.object(cli, "cmd_verify_qr") as command:
            assert run("verify-qr", "{}") == 3
        command.assert_not_called()
