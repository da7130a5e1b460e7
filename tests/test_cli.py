"""Tests for the settlement CLI."""

import json
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, inspect

from settlement_engine.cli import SettlementCli
from settlement_engine.errors import ProviderTransientError
from settlement_engine.wiring import build_services
from tests.conftest import PAYEE, STRIPE_WEBHOOK_SECRET, make_settings


@pytest.fixture
def cli(session_factory, registry, contracts, accounts):
    settings = make_settings()

    def services_factory(settings):
        return build_services(
            settings,
            session_factory=session_factory,
            providers=registry,
            contracts=contracts,
            accounts=accounts,
        )

    return SettlementCli(settings, services_factory)


def output(capsys):
    return json.loads(capsys.readouterr().out)


class TestSettlementCli:
    """CLI commands."""

    def test_no_command_prints_help(self, cli, capsys):
        assert cli.run([]) == 1
        assert "init-db" in capsys.readouterr().out

    def test_init_db(self, tmp_path, capsys):
        url = f"sqlite:///{tmp_path / 'cli.db'}"
        cli = SettlementCli(make_settings(database_url=url))

        assert cli.run(["init-db"]) == 0
        assert "Schema created" in capsys.readouterr().out

        engine = create_engine(url)
        try:
            tables = set(inspect(engine).get_table_names())
        finally:
            engine.dispose()
        assert {"payment_record", "webhook_event"} <= tables

    def test_fees(self, cli, capsys):
        assert cli.run(["fees", "10000"]) == 0

        data = output(capsys)
        assert data["total_payer_amount"] == 12995
        assert data["platform_amount"] == 2995

    def test_fees_rejects_non_positive_amount(self, cli):
        with pytest.raises(SystemExit):
            cli.run(["fees", "0"])

    def test_balance(self, cli, pay, capsys):
        pay()

        assert cli.run(["balance", "--user-id", PAYEE, "--provider", "stripe"]) == 0

        (balance,) = output(capsys)
        assert balance["available"] == 10000
        assert balance["earned"] == 10000

    def test_balance_across_providers(self, cli, pay, add_contract, capsys):
        add_contract("contract-2", service_amount=5000)
        pay()
        pay("contract-2", provider="nuvei")

        assert cli.run(["balance", "--user-id", PAYEE]) == 0

        balances = output(capsys)
        assert [(b["provider"], b["available"]) for b in balances] == [
            ("nuvei", 5000),
            ("stripe", 10000),
        ]

    def test_process_webhooks(self, cli, engine, reconciler, stripe_stub, capsys):
        charge = engine.initiate("contract-1", "payer-1", "stripe")
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_succeeded", ref=charge.external_ref
        )
        reconciler.receive("stripe", body, headers)

        assert cli.run(["process-webhooks", "--limit", "10"]) == 0

        data = output(capsys)
        assert data["processed"] == 1
        assert data["failed"] == 0
        assert engine.get_record(charge.payment_id).status == "succeeded"

    def test_resume_withdrawal(self, cli, engine, pay, stripe_stub, capsys):
        pay()
        stripe_stub.simulate_outage(calls=3)
        with pytest.raises(ProviderTransientError):
            engine.withdraw(PAYEE, 4000, "stripe")
        (withdrawal,) = engine.history(PAYEE, record_type="withdrawal").items

        assert cli.run(["resume-withdrawal", "--withdrawal-id", str(withdrawal.id)]) == 0

        data = output(capsys)
        assert data["status"] == "succeeded"
        assert data["available_after"] == 6000
        assert len(stripe_stub.payouts()) == 1

    def test_engine_errors_print_envelope(self, cli, capsys):
        assert cli.run(["resume-withdrawal", "--withdrawal-id", str(uuid4())]) == 1

        assert output(capsys)["code"] == "NOT_FOUND"
