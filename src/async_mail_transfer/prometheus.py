# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the mail transfer service.

All metrics use the ``mts_`` prefix (mail transfer service).

Metrics exposed:
    - ``mts_inbound_sessions_total``: Counter of accepted inbound connections.
    - ``mts_inbound_active_sessions``: Gauge of currently open inbound sessions.
    - ``mts_received_total``: Counter of persisted received messages.
    - ``mts_dropped_total``: Counter of recipients dropped for lack of an account.
    - ``mts_inbound_errors_total``: Counter of inbound failures by reason.
    - ``mts_sent_total``: Counter of relayed messages per provider.
    - ``mts_deferred_total``: Counter of sends turned into drafts per provider.
    - ``mts_dns_lookup_errors_total``: Counter of failed DNS lookups per record.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class MailMetrics:
    """Prometheus metrics collector for the mail transfer service.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A private one is
                created when omitted so several instances can coexist in tests.
        """
        self.registry = registry or CollectorRegistry()
        self.sessions = Counter(
            "mts_inbound_sessions_total",
            "Total inbound SMTP sessions",
            registry=self.registry,
        )
        self.active_sessions = Gauge(
            "mts_inbound_active_sessions",
            "Currently open inbound SMTP sessions",
            registry=self.registry,
        )
        self.received = Counter(
            "mts_received_total",
            "Total received messages persisted",
            registry=self.registry,
        )
        self.dropped = Counter(
            "mts_dropped_total",
            "Total recipients dropped without a local account",
            registry=self.registry,
        )
        self.inbound_errors = Counter(
            "mts_inbound_errors_total",
            "Total inbound processing errors",
            ["reason"],
            registry=self.registry,
        )
        self.sent = Counter(
            "mts_sent_total",
            "Total relayed messages",
            ["provider"],
            registry=self.registry,
        )
        self.deferred = Counter(
            "mts_deferred_total",
            "Total sends deferred to drafts",
            ["provider"],
            registry=self.registry,
        )
        self.dns_errors = Counter(
            "mts_dns_lookup_errors_total",
            "Total failed DNS lookups",
            ["record"],
            registry=self.registry,
        )

    def session_opened(self) -> None:
        self.sessions.inc()
        self.active_sessions.inc()

    def session_closed(self) -> None:
        self.active_sessions.dec()

    def inc_received(self) -> None:
        self.received.inc()

    def inc_dropped(self) -> None:
        self.dropped.inc()

    def inc_inbound_error(self, reason: str) -> None:
        """Increment the inbound error counter.

        Args:
            reason: Short label such as ``parse``, ``resolution`` or ``store``.
        """
        self.inbound_errors.labels(reason=reason or "other").inc()

    def inc_sent(self, provider: str) -> None:
        self.sent.labels(provider=provider or "default").inc()

    def inc_deferred(self, provider: str) -> None:
        self.deferred.labels(provider=provider or "default").inc()

    def inc_dns_error(self, record: str) -> None:
        self.dns_errors.labels(record=record).inc()

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
