"""
Security Metrics
================
Best-effort metric recording for the protection subsystem.
"""

from typing import Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class MetricNames:
    # Rate limiting
    RATE_LIMIT_ALLOWED = "apiguard_rate_limit_allowed"
    RATE_LIMIT_HITS = "apiguard_rate_limit_hits"
    RATE_LIMIT_DEGRADED = "apiguard_rate_limit_degraded"

    # Detection
    ABUSE_DETECTED = "apiguard_abuse_detected"
    DDOS_ATTACKERS = "apiguard_ddos_attackers"
    CONCURRENT_CONNECTIONS = "apiguard_concurrent_connections"
    GEO_BLOCKED = "apiguard_geo_blocked"

    # Response
    AUTO_BLOCKS = "apiguard_auto_blocks"
    BLOCK_DURATION_MINUTES = "apiguard_block_duration_minutes"


class MetricsRecorder:
    """
    In-process metrics collector.

    ``record_metric`` never raises: a metrics failure must not change a
    security decision.
    """

    def __init__(self, service: str = "apiguard", environment: str = "production"):
        self.service = service
        self.environment = environment
        self._counters: Dict[str, float] = {}
        self._gauges: Dict[str, float] = {}

    def record_metric(
        self,
        component: str,
        name: str,
        value: float = 1,
        tags: Optional[Dict[str, str]] = None,
    ) -> None:
        """Add ``value`` to a counter labelled by component and tags."""
        try:
            key = self._make_key(name, {"component": component, **(tags or {})})
            self._counters[key] = self._counters.get(key, 0) + value
        except Exception as e:
            logger.warning("metric_record_failed", metric=name, error=str(e))

    def set_gauge(
        self,
        component: str,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
    ) -> None:
        key = self._make_key(name, {"component": component, **(tags or {})})
        self._gauges[key] = value

    def _make_key(self, name: str, labels: Optional[Dict] = None) -> str:
        """Create a unique key for a metric."""
        if labels:
            label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
            return f"{name}{{{label_str}}}"
        return name

    def get_counter(self, component: str, name: str, tags: Optional[Dict[str, str]] = None) -> float:
        return self._counters.get(self._make_key(name, {"component": component, **(tags or {})}), 0)

    def get_gauge(self, component: str, name: str, tags: Optional[Dict[str, str]] = None) -> Optional[float]:
        return self._gauges.get(self._make_key(name, {"component": component, **(tags or {})}))

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        base_labels = f'service="{self.service}",env="{self.environment}"'

        for key, value in sorted(self._counters.items()):
            name, labels = self._split(key)
            lines.append(f"{name}_total{{{base_labels}{labels}}} {value}")

        for key, value in sorted(self._gauges.items()):
            name, labels = self._split(key)
            lines.append(f"{name}{{{base_labels}{labels}}} {value}")

        return "\n".join(lines)

    @staticmethod
    def _split(key: str):
        name = key.split("{")[0]
        extra = key[len(name) + 1:-1] if "{" in key else ""
        return name, f",{extra}" if extra else ""
