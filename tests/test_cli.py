"""
Tests for the RiftSettle CLI (src/cli.py)

Tests cover:
- Argument parsing and help
- Scheduled jobs (record-earnings, reconcile) against the memory store
- Claimable breakdown output
- Error reporting and exit codes
"""

import json
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, "src")

import cli
from chain_client import MockChainClient, configure_chain_client, reset_chain_client
from storage import reset_default_store

from conftest import LP_A, TREASURY


@pytest.fixture
def cli_env(monkeypatch):
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("CHAIN_BACKEND", "mock")
    monkeypatch.setenv("TREASURY_WALLET", TREASURY)
    monkeypatch.delenv("SHARE_ALLOCATION_POLICY", raising=False)
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)

    reset_default_store()
    reset_chain_client()
    chain = configure_chain_client(MockChainClient({TREASURY: Decimal("100")}))
    yield chain
    reset_default_store()
    reset_chain_client()


@pytest.fixture
def owed_lp_rift(cli_env):
    """r1 owes LP_A 4 SOL from a 10 SOL trade."""
    from api.state import init_services

    services = init_services()
    services.registry.update_config("r1", is_team_rift=False, lp_split=40, fees_enabled=True)
    services.distribution.update_lp_position("r1", LP_A, share_percent="100")
    cli_env.add_trade("r1", "10", timestamp="2100-01-01T00:00:00")
    return services


def run(argv):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(argv)
    return exc_info.value.code


class TestParser:
    """Tests for argument parsing."""

    def test_version(self, cli_env, capsys):
        assert run(["--version"]) == 0
        assert "0.1.0" in capsys.readouterr().out

    def test_no_command_prints_help(self, cli_env, capsys):
        assert run([]) == 1
        assert "record-earnings" in capsys.readouterr().out

    def test_distribute_requires_amount(self, cli_env):
        assert run(["distribute"]) == 2

    def test_invalid_recipient_type(self, cli_env):
        assert run(["record-earnings", "--recipient-type", "everyone"]) == 2


class TestJobs:
    """Tests for scheduled job commands."""

    def test_record_earnings(self, owed_lp_rift, capsys):
        assert run(["record-earnings"]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output["success"] is True
        assert output["recorded"] == 1
        assert Decimal(output["total_amount"]) == Decimal("4")

    def test_record_then_claimable(self, owed_lp_rift, capsys):
        run(["record-earnings"])
        capsys.readouterr()

        assert run(["claimable", "--wallet", LP_A, "--type", "lp"]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output["wallet"] == LP_A
        assert Decimal(output["totals"]["claimable"]) == Decimal("4")
        assert output["rifts"][0]["rift_id"] == "r1"

    def test_reconcile(self, cli_env, capsys):
        assert run(["reconcile"]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output["claims"]["checked"] == 0
        assert output["audit_queue"]["remaining"] == 0

    def test_distribute_invalid_amount(self, cli_env, capsys):
        assert run(["distribute", "--amount", "0"]) == 1
        assert "Error: Invalid amount" in capsys.readouterr().err


class TestCheck:
    """Tests for the installation check."""

    def test_check_passes(self, cli_env, capsys):
        assert run(["check"]) == 0
        out = capsys.readouterr().out
        assert "Storage (MemoryLedgerStore): OK" in out
        assert "Chain (mock): OK" in out
        assert "All checks passed!" in out

    def test_check_reports_bad_policy(self, cli_env, monkeypatch, capsys):
        monkeypatch.setenv("SHARE_ALLOCATION_POLICY", "average")
        assert run(["check"]) == 1
        assert "Settings: FAIL" in capsys.readouterr().out

    def test_info(self, cli_env, capsys):
        assert run(["info"]) == 0
        assert "STORAGE_BACKEND: memory" in capsys.readouterr().out
