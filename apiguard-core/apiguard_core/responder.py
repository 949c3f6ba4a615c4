"""
Automatic Response Coordinator
==============================
Turns detections into blocks with escalating durations, and raises alerts.

Violation history is not stored as a counter: it is recounted from blacklist
rows in ``ip_management`` on every response, so manual edits to the list are
reflected immediately.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence, Union

import structlog

from .access_list import IPAccessListManager
from .alerts import Alerter
from .config import EscalationConfig
from .exceptions import StoreUnavailableError, ValidationError
from .ip_utils import normalize_ip
from .metrics import MetricNames, MetricsRecorder
from .models import AlertLevel, DetectionReason, EventKind, ListType, ResponseOutcome, utcnow
from .store import EventStore

logger = structlog.get_logger(__name__)

COMPONENT = "security"

_DDOS_REASONS = {DetectionReason.DDOS, DetectionReason.VOLUMETRIC, DetectionReason.GEOGRAPHIC}
_CRITICAL_REASONS = {DetectionReason.VOLUMETRIC, DetectionReason.REPEATED}


def block_duration(violations: int, tiers: Sequence[int] = (15, 60, 1440)) -> int:
    """
    Map a prior-violation count to a block duration in minutes.

    With the default tiers: v <= 1 -> 15, v == 2 -> 60, v >= 3 -> 1440.
    """
    index = min(max(violations, 1), len(tiers)) - 1
    return tiers[index]


def alert_level(reason: DetectionReason, violations: int, tiers: Sequence[int] = (15, 60, 1440)) -> AlertLevel:
    """Repeat offenders (top tier) and volumetric attacks are critical; the rest warn."""
    if reason in _CRITICAL_REASONS or violations >= len(tiers):
        return AlertLevel.CRITICAL
    return AlertLevel.WARNING


class AutomaticResponder:
    """Single place where detection results become enforcement."""

    def __init__(
        self,
        store: EventStore,
        access_list: IPAccessListManager,
        alerter: Optional[Alerter] = None,
        metrics: Optional[MetricsRecorder] = None,
        config: Optional[EscalationConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.access_list = access_list
        self.alerter = alerter or Alerter()
        self.metrics = metrics or MetricsRecorder()
        self.config = config or EscalationConfig()
        self.clock = clock

    async def is_blocked(self, ip: str) -> bool:
        """
        True while a blacklist entry for ``ip`` is in force.

        Sweeps use this to skip offenders they already acted on, so one episode
        seen by consecutive sweeps counts as a single violation. A store failure
        answers False and the response path decides.
        """
        try:
            return await self.access_list.is_blacklisted(ip)
        except StoreUnavailableError as e:
            logger.warning("block_state_unavailable", ip=ip, error=str(e))
            return False

    async def respond(
        self,
        ip: str,
        reason: Union[DetectionReason, str],
        message: str,
    ) -> ResponseOutcome:
        """
        Block ``ip`` for the duration its violation history calls for.

        A block already in force that ends later (or never) is left in place;
        the event and alert are still produced. The alert is attempted even
        when the block write fails.
        """
        ip = normalize_ip(ip)
        try:
            reason = DetectionReason(reason)
        except ValueError:
            raise ValidationError(f"Unknown response reason: {reason!r}") from None

        degraded = False
        tiers = self.config.tier_minutes

        try:
            if await self.access_list.is_whitelisted(ip):
                logger.info("auto_response_skipped_whitelisted", ip=ip, reason=reason.value)
                return ResponseOutcome(
                    ip=ip, reason=reason.value, violations=0, duration_minutes=0,
                    blocked=False, alert_sent=False, level=AlertLevel.INFO,
                )
        except StoreUnavailableError as e:
            logger.warning("whitelist_check_failed", ip=ip, error=str(e))
            degraded = True

        try:
            violations = await self.access_list.violation_count(
                ip, timedelta(hours=self.config.lookback_hours)
            )
        except StoreUnavailableError as e:
            logger.warning("violation_history_unavailable", ip=ip, error=str(e))
            violations = 0
            degraded = True

        duration = block_duration(violations, tiers)
        level = alert_level(reason, violations, tiers)

        # A longer block already in force (permanent or manual) is never shortened
        existing = None
        try:
            existing = await self.access_list.active_entry(ip, ListType.BLACKLIST)
        except StoreUnavailableError as e:
            logger.warning("current_block_unavailable", ip=ip, error=str(e))
            degraded = True
        until = self.clock() + timedelta(minutes=duration)
        kept = existing is not None and (existing.is_permanent or existing.expires_at >= until)

        blocked = False
        expires_at = None
        if kept:
            blocked = True
            expires_at = existing.expires_at
        else:
            try:
                entry = await self.access_list.blacklist_add(ip, duration, f"auto:{reason.value}: {message}")
                blocked = True
                expires_at = entry.expires_at
            except StoreUnavailableError as e:
                logger.error("auto_block_failed", ip=ip, reason=reason.value, error=str(e))
                degraded = True

        if kept:
            event = "ip_auto_block_kept_existing"
        else:
            event = "ip_auto_blocked" if blocked else "ip_auto_block_not_applied"
        logger.warning(
            event,
            ip=ip,
            reason=reason.value,
            violations=violations,
            duration_minutes=duration,
            expires_at=expires_at.isoformat() if expires_at else None,
        )

        if kept:
            status = f"already blocked until {expires_at.isoformat()}" if expires_at else "already permanently blocked"
        else:
            status = f"blocked for {duration} min" if blocked else "block FAILED"
        alert_sent = await self.alerter.send_alert(
            COMPONENT,
            level,
            f"auto_block_{reason.value}",
            f"{message} - {ip} {status} (prior violations: {violations})",
        )

        self.metrics.record_metric(COMPONENT, MetricNames.AUTO_BLOCKS, tags={"reason": reason.value})
        self.metrics.set_gauge(
            COMPONENT, MetricNames.BLOCK_DURATION_MINUTES, duration, tags={"reason": reason.value}
        )

        try:
            await self.store.insert_event(
                ip,
                EventKind.DDOS if reason in _DDOS_REASONS else EventKind.ABUSE,
                metadata={
                    "reason": reason.value,
                    "message": message,
                    "violations": violations,
                    "duration_minutes": duration,
                    "blocked": blocked,
                    "kept_existing": kept,
                },
                timestamp=self.clock(),
            )
        except StoreUnavailableError as e:
            logger.warning("response_event_not_recorded", ip=ip, error=str(e))
            degraded = True

        return ResponseOutcome(
            ip=ip,
            reason=reason.value,
            violations=violations,
            duration_minutes=duration,
            blocked=blocked,
            alert_sent=alert_sent,
            level=level,
            degraded=degraded,
            expires_at=expires_at,
        )
