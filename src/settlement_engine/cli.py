"""Settlement Command Line Interface.

Provides operational tools for:
- Schema creation
- Fee previews
- Balance queries
- Draining the webhook inbox
- Resuming withdrawals whose payout call never completed

Usage:
    python -m settlement_engine.cli init-db
    python -m settlement_engine.cli fees 10000
    python -m settlement_engine.cli balance --user-id U [--provider stripe]
    python -m settlement_engine.cli process-webhooks --limit 100
    python -m settlement_engine.cli resume-withdrawal --withdrawal-id ID
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from typing import Any, Callable
from uuid import UUID

from settlement_engine.calculators import FeeCalculator
from settlement_engine.config import Settings, get_settings
from settlement_engine.database import build_engine, create_schema
from settlement_engine.errors import SettlementError
from settlement_engine.logging_config import setup_logging
from settlement_engine.wiring import SettlementServices, build_services

logger = logging.getLogger(__name__)


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


def parse_amount(s: str) -> int:
    """Parse a positive amount in minor units."""
    value = int(s)
    if value <= 0:
        raise argparse.ArgumentTypeError("amount must be a positive integer (minor units)")
    return value


class SettlementCli:
    """Settlement Command Line Interface."""

    def __init__(
        self,
        settings: Settings | None = None,
        services_factory: Callable[[Settings], SettlementServices] | None = None,
    ) -> None:
        self._settings = settings
        self._services_factory = services_factory or build_services
        self.parser = self._build_parser()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m settlement_engine.cli",
            description="Settlement engine operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create database tables")

        fees = subparsers.add_parser("fees", help="Preview the fee breakdown for a service amount")
        fees.add_argument(
            "amount",
            type=parse_amount,
            help="Service amount in minor units (e.g. cents)",
        )

        balance = subparsers.add_parser("balance", help="Show a user's balances")
        balance.add_argument("--user-id", required=True, help="User to report on")
        balance.add_argument("--provider", help="Restrict to one provider")
        balance.add_argument("--currency", help="Currency (default: configured default)")

        process = subparsers.add_parser(
            "process-webhooks",
            help="Apply received and retryable failed webhook events",
        )
        process.add_argument(
            "--limit",
            type=int,
            default=100,
            help="Maximum events to process (default: 100)",
        )

        resume = subparsers.add_parser(
            "resume-withdrawal",
            help="Re-issue a payout that has no provider reference yet",
        )
        resume.add_argument("--withdrawal-id", type=parse_uuid, required=True)

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run CLI with arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        commands: dict[str, Callable[[argparse.Namespace], int]] = {
            "init-db": self._cmd_init_db,
            "fees": self._cmd_fees,
            "balance": self._cmd_balance,
            "process-webhooks": self._cmd_process_webhooks,
            "resume-withdrawal": self._cmd_resume_withdrawal,
        }
        try:
            return commands[parsed.command](parsed)
        except SettlementError as exc:
            self._print(exc.to_dict())
            return 1

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        engine = build_engine(self.settings.database_url)
        create_schema(engine)
        engine.dispose()
        print("Schema created")
        return 0

    def _cmd_fees(self, args: argparse.Namespace) -> int:
        breakdown = FeeCalculator(self.settings.fees).calculate(args.amount)
        self._print({**asdict(breakdown), "platform_amount": breakdown.platform_amount})
        return 0

    def _cmd_balance(self, args: argparse.Namespace) -> int:
        services = self._services_factory(self.settings)
        try:
            if args.provider:
                snapshots = [
                    services.engine.balance(args.user_id, args.provider, currency=args.currency)
                ]
            else:
                snapshots = services.engine.all_balances(args.user_id)
        finally:
            services.close()

        self._print(
            [{**asdict(s), "available": s.available} for s in snapshots]
        )
        return 0

    def _cmd_process_webhooks(self, args: argparse.Namespace) -> int:
        services = self._services_factory(self.settings)
        try:
            result = services.reconciler.process_pending(limit=args.limit)
        finally:
            services.close()

        self._print(
            {
                "processed": result.events_processed,
                "ignored": result.events_ignored,
                "failed": result.events_failed,
                "errors": result.errors,
            }
        )
        return 0 if result.success else 1

    def _cmd_resume_withdrawal(self, args: argparse.Namespace) -> int:
        services = self._services_factory(self.settings)
        try:
            result = services.engine.resume_withdrawal(args.withdrawal_id)
        finally:
            services.close()

        self._print(asdict(result))
        return 0

    @staticmethod
    def _print(data: Any) -> None:
        print(json.dumps(data, indent=2, default=str))


def main() -> int:
    """CLI entry point."""
    setup_logging(get_settings().log_level)
    cli = SettlementCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
