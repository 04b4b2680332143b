"""Verification observability metrics.

Metric Categories:
- Session metrics: sessions by state, stale PENDING sessions
- Merchant payment metrics: attempts by state, entitlements recorded
- Callback metrics: callbacks by disposition, unmatched callbacks

Usage:
    collector = MetricsCollector(SessionStore(db), config)
    metrics = collector.collect_all()

    # For Prometheus export
    print(metrics.to_prometheus())

    # For JSON export
    print(metrics.to_json())
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from konfirmpay.models import utcnow
from konfirmpay.verification.callbacks import CallbackStatus
from konfirmpay.verification.config import VerificationConfig
from konfirmpay.verification.services.session_store import SessionStore
from konfirmpay.verification.state_machine import SessionState


@dataclass
class Counter:
    """A counter metric (monotonically increasing)."""

    name: str
    value: int
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


@dataclass
class Gauge:
    """A gauge metric (can go up or down)."""

    name: str
    value: float | int | Decimal
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


Metric = Counter | Gauge


@dataclass
class VerificationMetrics:
    """Collection of all verification metrics."""

    sessions_by_state: list[Counter]
    stale_pending_sessions: Gauge
    merchant_payments_by_state: list[Counter]
    entitlements_total: Counter
    callbacks_by_disposition: list[Counter]
    unmatched_callbacks: Gauge

    collected_at: datetime = field(default_factory=utcnow)

    def metrics(self) -> list[Metric]:
        """Every metric, in export order."""
        return [
            *self.sessions_by_state,
            self.stale_pending_sessions,
            *self.merchant_payments_by_state,
            self.entitlements_total,
            *self.callbacks_by_disposition,
            self.unmatched_callbacks,
        ]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "collected_at": self.collected_at.isoformat(),
            "metrics": [_metric_to_dict(m) for m in self.metrics()],
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    def to_prometheus(self) -> str:
        """Convert to Prometheus text format."""
        lines: list[str] = []
        described: set[str] = set()

        for metric in self.metrics():
            # HELP/TYPE once per metric family
            if metric.name not in described:
                described.add(metric.name)
                if metric.help_text:
                    lines.append(f"# HELP {metric.name} {metric.help_text}")
                metric_type = "counter" if isinstance(metric, Counter) else "gauge"
                lines.append(f"# TYPE {metric.name} {metric_type}")

            labels = ""
            if metric.labels:
                label_parts = [f'{k}="{v}"' for k, v in metric.labels.items()]
                labels = "{" + ",".join(label_parts) + "}"
            value = float(metric.value) if isinstance(metric.value, Decimal) else metric.value
            lines.append(f"{metric.name}{labels} {value}")

        return "\n".join(lines)


def _metric_to_dict(metric: Metric) -> dict[str, Any]:
    return {
        "name": metric.name,
        "value": float(metric.value) if isinstance(metric.value, Decimal) else metric.value,
        "labels": metric.labels,
        "help": metric.help_text,
    }


class MetricsCollector:
    """Collects metrics from the session store."""

    def __init__(self, store: SessionStore, config: VerificationConfig) -> None:
        self._store = store
        self._config = config

    def collect_all(self, now: datetime | None = None) -> VerificationMetrics:
        """Collect all metrics."""
        callbacks = self._store.count_callbacks_by_disposition()
        return VerificationMetrics(
            sessions_by_state=self._by_state(
                self._store.count_by_state(),
                "konfirmpay_sessions_total",
                "Verification sessions by state",
            ),
            stale_pending_sessions=self._stale_pending(now or utcnow()),
            merchant_payments_by_state=self._by_state(
                self._store.count_merchant_payments_by_state(),
                "konfirmpay_merchant_payments_total",
                "Merchant payment attempts by state",
            ),
            entitlements_total=Counter(
                name="konfirmpay_entitlements_total",
                value=self._store.count_entitlements(),
                help_text="Merchant entitlements recorded",
            ),
            callbacks_by_disposition=[
                Counter(
                    name="konfirmpay_callbacks_total",
                    value=count,
                    labels={"disposition": disposition},
                    help_text="Gateway callbacks by disposition",
                )
                for disposition, count in sorted(callbacks.items())
            ],
            unmatched_callbacks=Gauge(
                name="konfirmpay_unmatched_callbacks",
                value=callbacks.get(CallbackStatus.UNMATCHED.value, 0),
                help_text="Callbacks that matched no session (should be zero)",
            ),
        )

    @staticmethod
    def _by_state(counts: dict[str, int], name: str, help_text: str) -> list[Counter]:
        # Every state is reported, zero included
        return [
            Counter(
                name=name,
                value=counts.get(state.value, 0),
                labels={"state": state.value},
                help_text=help_text,
            )
            for state in SessionState
        ]

    def _stale_pending(self, now: datetime) -> Gauge:
        cutoff = now - timedelta(minutes=self._config.pending_ttl_minutes)
        return Gauge(
            name="konfirmpay_stale_pending_sessions",
            value=self._store.count_stale_pending(cutoff),
            help_text="PENDING sessions older than the expiry TTL",
        )
