"""
Abuse Detector
==============
Pattern, anomaly and behavioral analysis over recent security events.

Each analysis is recomputed from the store on every call. Whitelisted IPs are
never analysed. When the store cannot be reached an analysis reports
"no abuse" with ``degraded=True``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from .access_list import IPAccessListManager
from .config import ANOMALY_MULTIPLIER, AbuseConfig
from .exceptions import StoreUnavailableError
from .ip_utils import normalize_ip
from .metrics import MetricNames, MetricsRecorder
from .models import DetectionReason, DetectionResult, EventKind, ResponseOutcome, utcnow
from .responder import AutomaticResponder
from .store import EventStore

logger = structlog.get_logger(__name__)

COMPONENT = "abuse_detector"


def is_anomalous(baseline: float, current: float, multiplier: float = ANOMALY_MULTIPLIER) -> bool:
    """
    A zero baseline is insufficient evidence, never an anomaly.

    >>> is_anomalous(100, 350)
    True
    >>> is_anomalous(0, 5)
    False
    """
    return baseline > 0 and current > multiplier * baseline


@dataclass
class AbuseReport:
    """Combined outcome of the three analyses for one IP."""
    ip: str
    findings: List[DetectionResult] = field(default_factory=list)
    response: Optional[ResponseOutcome] = None
    skipped: Optional[str] = None

    @property
    def detected(self) -> bool:
        return any(f.detected for f in self.findings)

    @property
    def degraded(self) -> bool:
        return any(f.degraded for f in self.findings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "detected": self.detected,
            "degraded": self.degraded,
            "skipped": self.skipped,
            "findings": [f.to_dict() for f in self.findings],
            "response": self.response.to_dict() if self.response else None,
        }


class AbuseDetector:
    """Runs the abuse analyses and hands findings to the response coordinator."""

    def __init__(
        self,
        store: EventStore,
        access_list: IPAccessListManager,
        responder: Optional[AutomaticResponder] = None,
        config: Optional[AbuseConfig] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.access_list = access_list
        self.responder = responder
        self.config = config or AbuseConfig()
        self.metrics = metrics or MetricsRecorder()
        self.clock = clock

    async def _whitelisted(self, ip: str) -> bool:
        return await self.access_list.is_whitelisted(ip)

    async def analyze_patterns(self, ip: str) -> DetectionResult:
        """Rapid requests, high error rate, or excessive volume."""
        ip = normalize_ip(ip)
        cfg = self.config
        try:
            if await self._whitelisted(ip):
                return DetectionResult.clean(whitelisted=True)
            now = self.clock()
            rapid = await self.store.count_events(
                ip, EventKind.REQUEST, now - timedelta(seconds=cfg.rapid_request_window_seconds)
            )
            errors, total = await self.store.count_error_events(
                ip, now - timedelta(seconds=cfg.analysis_window_seconds)
            )
        except StoreUnavailableError as e:
            logger.warning("pattern_analysis_degraded", ip=ip, error=str(e))
            return DetectionResult.clean(degraded=True)

        error_rate = (errors * 100.0 / total) if total else 0.0
        evidence = {
            "rapid_requests": rapid,
            "errors": errors,
            "total_requests": total,
            "error_rate": round(error_rate, 2),
        }

        if rapid > cfg.rapid_request_threshold:
            message = (
                f"Rapid requests: {rapid} in {cfg.rapid_request_window_seconds}s "
                f"(threshold {cfg.rapid_request_threshold})"
            )
        elif total and error_rate > cfg.error_rate_threshold:
            message = f"High error rate: {error_rate:.1f}% (threshold {cfg.error_rate_threshold}%)"
        elif total > cfg.excessive_requests_threshold:
            message = (
                f"Excessive requests: {total} in {cfg.analysis_window_seconds}s "
                f"(threshold {cfg.excessive_requests_threshold})"
            )
        else:
            return DetectionResult.clean(**evidence)

        logger.warning("abuse_pattern_detected", ip=ip, detail=message)
        return DetectionResult(True, DetectionReason.PATTERN, message, evidence)

    async def detect_anomalies(self, ip: str) -> DetectionResult:
        """Compare the current hour with the IP's 7-day hourly baseline."""
        ip = normalize_ip(ip)
        days = self.config.baseline_days
        try:
            if await self._whitelisted(ip):
                return DetectionResult.clean(whitelisted=True)
            now = self.clock()
            hour_start = now - timedelta(hours=1)
            history = await self.store.count_events(
                ip, EventKind.REQUEST, hour_start - timedelta(days=days), until=hour_start
            )
            current = await self.store.count_events(ip, EventKind.REQUEST, hour_start)
        except StoreUnavailableError as e:
            logger.warning("anomaly_detection_degraded", ip=ip, error=str(e))
            return DetectionResult.clean(degraded=True)

        baseline = history / float(days * 24)
        evidence = {"baseline": round(baseline, 3), "current": current, "multiplier": ANOMALY_MULTIPLIER}
        if not is_anomalous(baseline, current):
            return DetectionResult.clean(**evidence)

        message = (
            f"Traffic anomaly: {current} requests this hour vs baseline {baseline:.1f}/h "
            f"(> {ANOMALY_MULTIPLIER}x)"
        )
        logger.warning("abuse_anomaly_detected", ip=ip, baseline=baseline, current=current)
        return DetectionResult(True, DetectionReason.ANOMALY, message, evidence)

    async def analyze_behavior(self, ip: str) -> DetectionResult:
        """Endpoint diversity (scanning) or user-agent diversity (rotation)."""
        ip = normalize_ip(ip)
        cfg = self.config
        try:
            if await self._whitelisted(ip):
                return DetectionResult.clean(whitelisted=True)
            now = self.clock()
            endpoints = await self.store.count_distinct_endpoints(
                ip, now - timedelta(seconds=cfg.endpoint_diversity_window_seconds)
            )
            user_agents = await self.store.count_distinct_user_agents(
                ip, now - timedelta(seconds=cfg.user_agent_diversity_window_seconds)
            )
        except StoreUnavailableError as e:
            logger.warning("behavior_analysis_degraded", ip=ip, error=str(e))
            return DetectionResult.clean(degraded=True)

        evidence = {"distinct_endpoints": endpoints, "distinct_user_agents": user_agents}
        if endpoints > cfg.endpoint_diversity_threshold:
            message = (
                f"High endpoint diversity: {endpoints} endpoints in "
                f"{cfg.endpoint_diversity_window_seconds}s (threshold {cfg.endpoint_diversity_threshold})"
            )
        elif user_agents > cfg.user_agent_diversity_threshold:
            message = (
                f"High user agent diversity: {user_agents} agents in "
                f"{cfg.user_agent_diversity_window_seconds}s (threshold {cfg.user_agent_diversity_threshold})"
            )
        else:
            return DetectionResult.clean(**evidence)

        logger.warning("abuse_behavior_detected", ip=ip, detail=message)
        return DetectionResult(True, DetectionReason.BEHAVIORAL, message, evidence)

    async def check_ip(self, ip: str) -> AbuseReport:
        """
        Run all three analyses for one IP.

        The first finding (patterns, then anomalies, then behavior) is handed to
        the response coordinator once, so a single sweep escalates an IP by one
        violation at most. An IP whose block is still in force is not responded
        to again: the burst that caused it stays visible in the window.
        """
        ip = normalize_ip(ip)
        report = AbuseReport(ip=ip)
        if not self.config.enabled:
            report.skipped = "disabled"
            return report

        report.findings = [
            await self.analyze_patterns(ip),
            await self.detect_anomalies(ip),
            await self.analyze_behavior(ip),
        ]
        if all(f.evidence.get("whitelisted") for f in report.findings):
            report.skipped = "whitelisted"
            return report

        finding = next((f for f in report.findings if f.detected), None)
        if finding is None:
            return report

        self.metrics.record_metric(COMPONENT, MetricNames.ABUSE_DETECTED, tags={"reason": finding.reason.value})
        if self.responder is None:
            return report
        if await self.responder.is_blocked(ip):
            logger.info("abuse_already_blocked", ip=ip, reason=finding.reason.value)
            report.skipped = "blacklisted"
            return report
        report.response = await self.responder.respond(ip, finding.reason, finding.message)
        return report

    async def analyze_all(self) -> List[AbuseReport]:
        """Check every IP that sent requests within the analysis window."""
        if not self.config.enabled:
            logger.info("abuse_detection_disabled")
            return []
        since = self.clock() - timedelta(seconds=self.config.analysis_window_seconds)
        try:
            ips = await self.store.active_ips(since)
        except StoreUnavailableError as e:
            logger.warning("abuse_sweep_degraded", error=str(e))
            return []

        reports = [await self.check_ip(ip) for ip in ips]
        logger.info(
            "abuse_sweep_completed",
            ips_checked=len(reports),
            detections=sum(1 for r in reports if r.detected),
        )
        return reports

    async def stats(self, hours: int = 24) -> Dict[str, Any]:
        """Security event counts by kind for the last ``hours``."""
        try:
            counts = await self.store.event_counts_by_kind(self.clock() - timedelta(hours=hours))
        except StoreUnavailableError as e:
            logger.warning("abuse_stats_unavailable", error=str(e))
            return {"hours": hours, "counts": {}, "degraded": True}
        return {"hours": hours, "counts": counts, "degraded": False}

    async def recent_detections(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Latest abuse/ddos events, newest first."""
        try:
            return await self.store.recent_events([EventKind.ABUSE, EventKind.DDOS], limit=limit)
        except StoreUnavailableError as e:
            logger.warning("recent_detections_unavailable", error=str(e))
            return []
