"""
DDoS Protector
==============
Volumetric attack detection, connection-rate checks and geographic filtering.

Detections are handed to the response coordinator by ``sweep``; the individual
checks only decide.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from .access_list import IPAccessListManager
from .alerts import Alerter
from .config import DDoSConfig, GeolocationConfig
from .exceptions import GeolocationError, StoreUnavailableError, ValidationError
from .geolocation import GeoLocator
from .ip_utils import is_internal_ip
from .metrics import MetricNames, MetricsRecorder
from .models import AlertLevel, DetectionReason, DetectionResult, ResponseOutcome, utcnow
from .responder import AutomaticResponder
from .store import EventStore

logger = structlog.get_logger(__name__)

COMPONENT = "ddos_protection"


@dataclass
class DDoSReport:
    """Everything one protection sweep found and did."""
    volumetric: Optional[DetectionResult] = None
    connections: Optional[DetectionResult] = None
    geographic: Optional[DetectionResult] = None
    responses: List[ResponseOutcome] = field(default_factory=list)
    already_blocked: List[str] = field(default_factory=list)
    skipped: Optional[str] = None

    @property
    def findings(self) -> List[DetectionResult]:
        return [r for r in (self.volumetric, self.connections, self.geographic) if r is not None]

    @property
    def detected(self) -> bool:
        return any(r.detected for r in self.findings)

    @property
    def degraded(self) -> bool:
        return any(r.degraded for r in self.findings) or any(r.degraded for r in self.responses)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detected": self.detected,
            "degraded": self.degraded,
            "skipped": self.skipped,
            "volumetric": self.volumetric.to_dict() if self.volumetric else None,
            "connections": self.connections.to_dict() if self.connections else None,
            "geographic": self.geographic.to_dict() if self.geographic else None,
            "responses": [r.to_dict() for r in self.responses],
            "already_blocked": self.already_blocked,
        }


class DDoSProtector:
    """Short-window attack detection across all client IPs."""

    def __init__(
        self,
        store: EventStore,
        access_list: IPAccessListManager,
        responder: Optional[AutomaticResponder] = None,
        config: Optional[DDoSConfig] = None,
        geolocator: Optional[GeoLocator] = None,
        alerter: Optional[Alerter] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.access_list = access_list
        self.responder = responder
        self.config = config or DDoSConfig()
        self._geolocator = geolocator
        self.alerter = alerter or Alerter()
        self.metrics = metrics or MetricsRecorder()
        self.clock = clock

    @property
    def geolocator(self) -> GeoLocator:
        # Only built when geographic filtering actually runs
        if self._geolocator is None:
            geo = GeolocationConfig()
            self._geolocator = GeoLocator(geo.api_url, timeout=geo.timeout)
        return self._geolocator

    def _window_start(self) -> datetime:
        return self.clock() - timedelta(seconds=self.config.check_window_seconds)

    async def _drop_whitelisted(self, ips: List[str]) -> List[str]:
        return [ip for ip in ips if not await self.access_list.is_whitelisted(ip)]

    async def detect_attack(self) -> DetectionResult:
        """
        Flag every IP whose request count in the check window exceeds the
        volumetric threshold. Several offenders in one pass indicate a
        distributed attack.
        """
        cfg = self.config
        try:
            counts = await self.store.request_counts_by_ip(
                self._window_start(), min_count=cfg.requests_threshold
            )
            allowed = set(await self._drop_whitelisted([ip for ip, _ in counts]))
        except StoreUnavailableError as e:
            logger.warning("ddos_detection_degraded", error=str(e))
            return DetectionResult.clean(degraded=True)

        offenders = {ip: count for ip, count in counts if ip in allowed}
        self.metrics.set_gauge(COMPONENT, MetricNames.DDOS_ATTACKERS, len(offenders))
        if not offenders:
            return DetectionResult.clean(offenders={})

        message = (
            f"{len(offenders)} IP(s) above {cfg.requests_threshold} requests "
            f"in {cfg.check_window_seconds}s"
        )
        logger.warning("ddos_attack_detected", offenders=len(offenders), top=next(iter(offenders)))
        return DetectionResult(
            True,
            DetectionReason.VOLUMETRIC,
            message,
            {
                "offenders": offenders,
                "threshold": cfg.requests_threshold,
                "window_seconds": cfg.check_window_seconds,
            },
        )

    async def check_connection_rate(self, current_connections: int) -> DetectionResult:
        """
        Compare the concurrent-connection count against its threshold.

        Raises a critical alert when exceeded; nobody is blocked since there
        may be no single attacker.
        """
        if current_connections < 0:
            raise ValidationError(f"Connection count must be >= 0, got {current_connections}")
        threshold = self.config.concurrent_connections_threshold
        self.metrics.set_gauge(COMPONENT, MetricNames.CONCURRENT_CONNECTIONS, current_connections)
        evidence = {"connections": current_connections, "threshold": threshold}
        if current_connections <= threshold:
            return DetectionResult.clean(**evidence)

        message = f"High concurrent connections: {current_connections} (threshold {threshold})"
        logger.warning("connection_rate_exceeded", connections=current_connections, threshold=threshold)
        await self.alerter.send_alert(COMPONENT, AlertLevel.CRITICAL, "high_connection_count", message)
        return DetectionResult(True, DetectionReason.CONNECTION_RATE, message, evidence)

    async def check_geographic(self) -> DetectionResult:
        """
        Flag active IPs located outside the allowed countries.

        Skipped entirely (no lookups) when geographic filtering is disabled.
        Private addresses and failed or empty lookups are never flagged.
        """
        cfg = self.config
        if not cfg.geo_filtering_enabled:
            return DetectionResult.clean(skipped="disabled")

        try:
            ips = await self.store.active_ips(self._window_start())
            ips = await self._drop_whitelisted([ip for ip in ips if not is_internal_ip(ip)])
        except StoreUnavailableError as e:
            logger.warning("geo_filter_degraded", error=str(e))
            return DetectionResult.clean(degraded=True)

        offenders: Dict[str, str] = {}
        failures = 0
        for ip in ips:
            try:
                country = await self.geolocator.resolve_country(ip)
            except GeolocationError as e:
                logger.warning("geolocation_failed", ip=ip, error=str(e))
                failures += 1
                continue
            if country and country not in cfg.allowed_countries:
                offenders[ip] = country

        evidence: Dict[str, Any] = {"checked": len(ips), "lookup_failures": failures, "offenders": offenders}
        if not offenders:
            return DetectionResult.clean(**evidence)

        self.metrics.record_metric(COMPONENT, MetricNames.GEO_BLOCKED, len(offenders))
        message = f"{len(offenders)} IP(s) from countries outside {','.join(cfg.allowed_countries)}"
        logger.warning("geo_filter_violation", offenders=offenders)
        return DetectionResult(True, DetectionReason.GEOGRAPHIC, message, evidence)

    async def sweep(self, current_connections: Optional[int] = None) -> DDoSReport:
        """Run every check and hand volumetric and geographic offenders to the coordinator."""
        report = DDoSReport()
        if not self.config.enabled:
            logger.info("ddos_protection_disabled")
            report.skipped = "disabled"
            return report

        report.volumetric = await self.detect_attack()
        if current_connections is not None:
            report.connections = await self.check_connection_rate(current_connections)
        report.geographic = await self.check_geographic()

        if report.volumetric.detected and len(report.volumetric.evidence["offenders"]) > 1:
            await self.alerter.send_alert(
                COMPONENT, AlertLevel.CRITICAL, "distributed_attack", report.volumetric.message
            )

        if self.responder is not None:
            pending = [
                (ip, DetectionReason.VOLUMETRIC,
                 f"DDoS: {count} requests in {self.config.check_window_seconds}s")
                for ip, count in report.volumetric.evidence.get("offenders", {}).items()
            ] + [
                (ip, DetectionReason.GEOGRAPHIC, f"Request from disallowed country {country}")
                for ip, country in report.geographic.evidence.get("offenders", {}).items()
            ]
            for ip, reason, message in pending:
                if await self.responder.is_blocked(ip):
                    report.already_blocked.append(ip)
                    continue
                report.responses.append(await self.responder.respond(ip, reason, message))
            if report.already_blocked:
                logger.info("ddos_offenders_already_blocked", ips=report.already_blocked)

        logger.info(
            "ddos_sweep_completed",
            detected=report.detected,
            blocked=sum(1 for r in report.responses if r.blocked),
            degraded=report.degraded,
        )
        return report

    async def aclose(self) -> None:
        if self._geolocator is not None:
            await self._geolocator.aclose()
