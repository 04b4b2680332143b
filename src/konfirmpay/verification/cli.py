"""KonfirmPay operations command line interface.

Provides operational tools for:
- Expiring sessions that never received a callback
- Metrics emission
- Listing unmatched callbacks
- Retrying a failed merchant payment
- Health checks

Usage:
    konfirmpay-ops expire-stale --ttl-minutes 30
    konfirmpay-ops metrics --format prometheus
    konfirmpay-ops unmatched-callbacks --limit 20
    konfirmpay-ops retry-merchant-payment --session-id X
    konfirmpay-ops health
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import replace
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from konfirmpay.config import Settings, get_settings
from konfirmpay.database import sync_session
from konfirmpay.log import configure_logging
from konfirmpay.verification.config import validate_production_config
from konfirmpay.verification.errors import VerificationError
from konfirmpay.verification.events import EventEmitter, log_event
from konfirmpay.verification.gateway import DarajaGateway, PaymentGateway, StubGateway
from konfirmpay.verification.metrics import MetricsCollector
from konfirmpay.verification.services import (
    MerchantDirectory,
    MerchantPaymentService,
    SessionStore,
    expire_stale_sessions,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    try:
        return UUID(s)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not a UUID: {s}") from exc


def _positive_int(s: str) -> int:
    value = int(s)
    if value < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return value


def _json_default(value: Any) -> str:
    return str(value)


class VerificationCli:
    """KonfirmPay Command Line Interface."""

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: SessionFactory | None = None,
        gateway: PaymentGateway | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._gateway = gateway
        self.emitter = EventEmitter()
        self.emitter.on_all(log_event)
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="konfirmpay-ops",
            description="KonfirmPay operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # expire-stale command
        expire = subparsers.add_parser(
            "expire-stale",
            help="Fail PENDING sessions that outlived the TTL",
        )
        expire.add_argument(
            "--ttl-minutes",
            type=_positive_int,
            help="Override PENDING_TTL_MINUTES",
        )

        # metrics command
        metrics = subparsers.add_parser(
            "metrics",
            help="Emit verification metrics",
        )
        metrics.add_argument(
            "--format",
            type=str,
            choices=["json", "prometheus"],
            default="json",
            help="Output format",
        )

        # unmatched-callbacks command
        unmatched = subparsers.add_parser(
            "unmatched-callbacks",
            help="List callbacks that matched no session",
        )
        unmatched.add_argument(
            "--limit",
            type=_positive_int,
            default=50,
            help="Maximum rows to show",
        )

        # retry-merchant-payment command
        retry = subparsers.add_parser(
            "retry-merchant-payment",
            help="Start a new merchant payment attempt after a failure",
        )
        retry.add_argument(
            "--session-id",
            type=parse_uuid,
            required=True,
            help="Verification session ID",
        )

        # health command
        subparsers.add_parser(
            "health",
            help="Check database and configuration",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        # Dispatch to command handler
        handlers: dict[str, Callable[[argparse.Namespace], int]] = {
            "expire-stale": self._cmd_expire_stale,
            "metrics": self._cmd_metrics,
            "unmatched-callbacks": self._cmd_unmatched_callbacks,
            "retry-merchant-payment": self._cmd_retry_merchant_payment,
            "health": self._cmd_health,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        try:
            return handler(parsed)
        except VerificationError as exc:
            print(f"Error [{exc.code}]: {exc.message}", file=sys.stderr)
            return 2

    def _session(self) -> AbstractContextManager[Session]:
        if self._session_factory is not None:
            return self._session_factory()
        return sync_session()

    def _build_gateway(self) -> PaymentGateway:
        if self._gateway is None:
            daraja = self.settings.daraja
            self._gateway = DarajaGateway(daraja) if daraja else StubGateway()
        return self._gateway

    def _cmd_expire_stale(self, args: argparse.Namespace) -> int:
        """Fail stale PENDING records."""
        config = self.settings.verification
        if args.ttl_minutes:
            config = replace(config, pending_ttl_minutes=args.ttl_minutes)

        with self._session() as db:
            result = expire_stale_sessions(SessionStore(db), config, emitter=self.emitter)

        print(f"Cutoff: {result.cutoff.isoformat()}")
        print(f"Expired sessions: {len(result.session_ids)}")
        for session_id in result.session_ids:
            print(f"  - {session_id}")
        print(f"Expired merchant payments: {len(result.merchant_payment_ids)}")
        return 0

    def _cmd_metrics(self, args: argparse.Namespace) -> int:
        """Emit metrics."""
        with self._session() as db:
            metrics = MetricsCollector(SessionStore(db), self.settings.verification).collect_all()

        if args.format == "json":
            print(metrics.to_json())
        else:
            print(metrics.to_prometheus())
        return 0

    def _cmd_unmatched_callbacks(self, args: argparse.Namespace) -> int:
        """List unmatched callbacks, newest first."""
        with self._session() as db:
            rows = SessionStore(db).callbacks_with_disposition("unmatched", limit=args.limit)

        if not rows:
            print("No unmatched callbacks.")
            return 0

        print(f"{'Received':<32} {'Channel':<18} {'Token':<32} {'Result':<8} Receipt")
        print("-" * 104)
        for row in rows:
            print(
                f"{str(row['received_at']):<32} {row['channel']:<18} "
                f"{row['correlation_token'] or '-':<32} {row['result_code'] or '-':<8} "
                f"{row['receipt_reference'] or '-'}"
            )
        return 0

    def _cmd_retry_merchant_payment(self, args: argparse.Namespace) -> int:
        """Retry the merchant leg of a session."""
        with self._session() as db:
            service = MerchantPaymentService(
                SessionStore(db),
                MerchantDirectory(db),
                self._build_gateway(),
                self.settings.verification,
                emitter=self.emitter,
                callback_url=self.settings.merchant_callback_url,
            )
            record = service.retry(args.session_id)

        print(
            json.dumps(
                {
                    "merchant_payment_id": record.merchant_payment_id,
                    "session_id": record.session_id,
                    "attempt": record.attempt,
                    "state": record.state,
                    "failure_reason": record.failure_reason,
                },
                indent=2,
                default=_json_default,
            )
        )
        return 0

    def _cmd_health(self, args: argparse.Namespace) -> int:
        """Check system health."""
        print("KonfirmPay Health Check")
        print("=" * 40)

        healthy = True
        try:
            with self._session() as db:
                db.execute(text("SELECT 1"))
            print("\ndb: OK")
        except SQLAlchemyError as exc:
            healthy = False
            print(f"\ndb: FAIL ({exc.__class__.__name__})")

        issues = validate_production_config(self.settings.verification, self.settings.daraja)
        print(f"\ngateway: {self.settings.gateway}")
        for issue in issues:
            print(f"  {issue}")
        if any(issue.startswith("CRITICAL") for issue in issues):
            healthy = False

        print("\n" + "=" * 40)
        print("Overall: HEALTHY" if healthy else "Overall: UNHEALTHY")
        return 0 if healthy else 1


def main() -> int:
    """CLI entry point."""
    configure_logging(get_settings().log_level)
    cli = VerificationCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
