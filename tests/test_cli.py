"""
Tests for the hdengine command line interface.
"""

import sys

import pytest
from loguru import logger
from typer.testing import CliRunner

from hdengine.cli import app

runner = CliRunner()

PASSWORD = "cli password"


@pytest.fixture(autouse=True)
def cli_env(monkeypatch, wallet_path):
    monkeypatch.setenv("HDENGINE_WALLET_PATH", str(wallet_path))
    monkeypatch.setenv("HDENGINE_ARGON2_TIME_COST", "1")
    monkeypatch.setenv("HDENGINE_ARGON2_MEMORY_COST", "8")
    monkeypatch.setenv("HDENGINE_ARGON2_PARALLELISM", "1")
    monkeypatch.delenv("HDENGINE_PASSWORD", raising=False)
    monkeypatch.delenv("MNEMONIC", raising=False)
    yield
    # The CLI points loguru at the runner's captured stderr
    logger.remove()
    logger.add(sys.stderr)


def create_wallet(mnemonic: str, *extra: str):
    return runner.invoke(
        app, ["create", "--mnemonic", mnemonic, "--password", PASSWORD, *extra]
    )


class TestGenerate:
    def test_twelve_words(self):
        result = runner.invoke(app, ["generate", "--words", "12"])
        assert result.exit_code == 0
        lines = [line for line in result.stdout.splitlines() if len(line.split()) == 12]
        assert len(lines) == 1

    def test_invalid_word_count(self):
        result = runner.invoke(app, ["generate", "--words", "13"])
        assert result.exit_code == 1


class TestValidate:
    def test_valid(self):
        result = runner.invoke(app, ["validate", "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"])
        assert result.exit_code == 0
        assert "valid" in result.stdout

    def test_wrong_network(self):
        result = runner.invoke(
            app, ["validate", "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH", "--coin", "1"]
        )
        assert result.exit_code == 1


class TestWalletLifecycle:
    def test_create_account_and_receive(self, sample_mnemonic, wallet_path):
        result = create_wallet(sample_mnemonic)
        assert result.exit_code == 0, result.output
        assert wallet_path.exists()

        result = runner.invoke(app, ["new-account", "--coin", "0", "--password", PASSWORD])
        assert result.exit_code == 0, result.output
        assert "Account 0 (Bitcoin): xpub" in result.stdout

        result = runner.invoke(app, ["receive", "--password", PASSWORD])
        assert result.exit_code == 0, result.output
        assert "1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA" in result.stdout.splitlines()

        result = runner.invoke(app, ["accounts", "--password", PASSWORD])
        assert result.exit_code == 0, result.output
        assert "Bitcoin (m/44'/0')" in result.stdout
        assert "account 0: 1 receive / 0 change addresses issued" in result.stdout

    def test_existing_wallet_needs_force(self, sample_mnemonic):
        assert create_wallet(sample_mnemonic).exit_code == 0
        assert create_wallet(sample_mnemonic).exit_code == 1
        assert create_wallet(sample_mnemonic, "--force").exit_code == 0

    def test_invalid_mnemonic(self, wallet_path):
        result = create_wallet(" ".join(["abandon"] * 12))
        assert result.exit_code == 1
        assert not wallet_path.exists()

    def test_wrong_password(self, sample_mnemonic):
        assert create_wallet(sample_mnemonic).exit_code == 0
        result = runner.invoke(app, ["accounts", "--password", "nope"])
        assert result.exit_code == 1

    def test_change_password(self, sample_mnemonic):
        assert create_wallet(sample_mnemonic).exit_code == 0
        result = runner.invoke(
            app,
            ["change-password", "--old-password", PASSWORD, "--new-password", "fresh"],
        )
        assert result.exit_code == 0, result.output
        assert runner.invoke(app, ["accounts", "--password", "fresh"]).exit_code == 0
