"""
Tests for the CLI interface.
"""
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from ai_credit_engine.cli.main import app, EXIT_CODE_DISCREPANCY, EXIT_CODE_FAIL, EXIT_CODE_PASS
from ai_credit_engine.storage.db import get_connection
from ai_credit_engine.storage.models import UsageFact, utc_now
from ai_credit_engine.storage.repository import LedgerStore

runner = CliRunner()


@pytest.fixture
def cli(db_path):
    """Invoke the CLI against a temporary database."""
    def _invoke(*args):
        return runner.invoke(app, ["--db", db_path, *args])
    return _invoke


@pytest.fixture
def funded_org(cli):
    """An org with 1000 monthly credits and 100 allocated to member-1."""
    assert cli("grant", "--org", "org-1", "--amount", "1000").exit_code == EXIT_CODE_PASS
    assert cli(
        "allocate", "--org", "org-1", "--as", "owner-1",
        "--member", "member-1", "--feature", "chat", "--amount", "100"
    ).exit_code == EXIT_CODE_PASS
    return "org-1"


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self, cli):
        result = cli()
        assert result.exit_code == 0
        assert "Use --help" in result.stdout

    def test_init(self, cli):
        result = cli("init")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.stdout

    def test_grant_and_balance(self, cli):
        result = cli("grant", "--org", "org-1", "-a", "1000")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Granted 1000 monthly credits" in result.stdout

        result = cli("balance", "--org", "org-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "1000" in result.stdout

    def test_balance_missing_org(self, cli):
        result = cli("balance", "--org", "nobody")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "No credit pool" in result.stdout

    def test_topup_is_idempotent(self, cli):
        first = cli("topup", "--org", "org-1", "--amount", "500", "--invoice", "inv-1")
        second = cli("topup", "--org", "org-1", "--amount", "500", "--invoice", "inv-1")

        assert first.exit_code == EXIT_CODE_PASS
        assert "Added 500 top-up credits" in first.stdout
        assert second.exit_code == EXIT_CODE_PASS
        assert "already applied" in second.stdout

    def test_allocate_deduct_reclaim_flow(self, cli, funded_org):
        result = cli("deduct", "--org", funded_org, "--as", "member-1", "--feature", "chat", "--amount", "85")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Deducted 85 credits (100 -> 15)" in result.stdout

        result = cli(
            "reclaim", "--org", funded_org, "--as", "owner-1",
            "-m", "member-1", "-f", "chat", "-a", "15"
        )
        assert result.exit_code == EXIT_CODE_PASS

        result = cli("team", "--org", funded_org)
        assert result.exit_code == EXIT_CODE_PASS
        assert "member-1" in result.stdout

    def test_deduct_insufficient_credits(self, cli, funded_org):
        result = cli("deduct", "--org", funded_org, "--as", "member-1", "-f", "chat", "-a", "101")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "INSUFFICIENT_MEMBER_CREDITS" in result.stdout
        assert "shortfall=1" in result.stdout

    def test_member_cannot_allocate(self, cli, funded_org):
        result = cli(
            "allocate", "--org", funded_org, "--as", "member-1", "--role", "member",
            "-m", "member-2", "-f", "chat", "-a", "10"
        )
        assert result.exit_code == EXIT_CODE_FAIL
        assert "PERMISSION_DENIED" in result.stdout

    def test_invalid_role(self, cli):
        result = cli("deduct", "--org", "org-1", "--as", "x", "--role", "emperor", "-f", "chat", "-a", "1")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid actor" in result.stdout

    def test_add_member_invalid_role(self, cli):
        result = cli("add-member", "--org", "org-1", "--user", "u", "--role", "super_admin")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid member role" in result.stdout

    def test_notifications_lists_outbox(self, cli, funded_org):
        cli("add-member", "--org", funded_org, "--user", "owner-1", "--role", "owner")
        cli("deduct", "--org", funded_org, "--as", "member-1", "-f", "chat", "-a", "90")

        result = cli("notifications", "--org", funded_org, "--user", "owner-1")

        assert result.exit_code == EXIT_CODE_PASS
        assert "credits_low" in result.stdout

    def test_report(self, cli, funded_org):
        result = cli("report", "--period", "all")
        assert result.exit_code == EXIT_CODE_PASS
        assert "AI Cost & Margin Report" in result.stdout
        assert "No AI usage recorded" in result.stdout

    def test_report_filtered_to_one_model(self, cli, funded_org, db_path):
        store = LedgerStore(db_path)
        for model, credits in (("gpt-4o", 9), ("gpt-4o-mini", 1)):
            store.insert_usage_fact(UsageFact(
                id=f"fact-{model}",
                organization_id=funded_org,
                user_id="member-1",
                model=model,
                provider="openai",
                feature="chat",
                input_tokens=1000,
                output_tokens=100,
                is_free_model=False,
                credits_charged=credits,
                created_at=utc_now()
            ))

        result = cli("report", "--period", "all", "--model", "gpt-4o")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Requests: 1 (0 free)" in result.stdout
        assert "Credits charged: 9" in result.stdout
        assert "By user" in result.stdout
        assert "Recent requests" in result.stdout

    def test_report_invalid_period(self, cli):
        result = cli("report", "--period", "1y")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown report period" in result.stdout

    def test_verify_clean(self, cli, funded_org):
        result = cli("verify", "--org", funded_org)
        assert result.exit_code == EXIT_CODE_PASS
        assert "agree" in result.stdout

    def test_verify_detects_and_repairs(self, cli, funded_org, db_path):
        conn = get_connection(db_path)
        try:
            conn.execute("UPDATE member_allocation SET credits_remaining = 3")
        finally:
            conn.close()

        result = cli("verify", "--org", funded_org)
        assert result.exit_code == EXIT_CODE_DISCREPANCY

        result = cli("verify", "--org", funded_org, "--repair")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Repaired 1 balance row(s)" in result.stdout

        assert cli("verify", "--org", funded_org).exit_code == EXIT_CODE_PASS

    def test_missing_config_file(self, cli):
        result = cli("--config", "/nonexistent/engine.yaml", "init")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error loading config" in result.stdout

    def test_engine_error_on_init(self, cli):
        with patch("ai_credit_engine.cli.main.CreditEngine.from_config", side_effect=RuntimeError("disk gone")):
            result = cli("init")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "disk gone" in result.stdout
