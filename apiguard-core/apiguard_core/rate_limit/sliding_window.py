"""
Sliding Window Rate Limiter
===========================
Admission control recomputed from the event store on every call.

Counts are read and written in separate statements, so concurrent callers can
briefly overshoot a limit before the next evaluation sees their events.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..access_list import IPAccessListManager
from ..alerts import Alerter
from ..config import RateLimitConfig
from ..exceptions import StoreUnavailableError
from ..ip_utils import normalize_ip
from ..metrics import MetricNames, MetricsRecorder
from ..models import AlertLevel, Decision, EventKind, RateLimitDecision, utcnow
from ..store import EventStore
from .models import LimitCheck

logger = structlog.get_logger(__name__)

COMPONENT = "rate_limiter"


class SlidingWindowLimiter:
    """
    Sliding window rate limiter over ``security_events``.

    Evaluation order: whitelist (allow), blacklist (block), then every
    applicable limit; the request is denied if any limit is exceeded.
    Store failures fail open with ``degraded=True``.
    """

    def __init__(
        self,
        store: EventStore,
        access_list: IPAccessListManager,
        config: Optional[RateLimitConfig] = None,
        alerter: Optional[Alerter] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.access_list = access_list
        self.config = config or RateLimitConfig()
        self.alerter = alerter or Alerter()
        self.metrics = metrics or MetricsRecorder()
        self.clock = clock

    async def check(
        self,
        ip: str,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> RateLimitDecision:
        """
        Decide whether a request from ``ip`` is admitted.

        Raises:
            InvalidIPAddressError: for a malformed address (no store access)
        """
        ip = normalize_ip(ip)
        try:
            if await self.access_list.is_whitelisted(ip):
                return RateLimitDecision(Decision.ALLOWED, reason="whitelisted")
            if await self.access_list.is_blacklisted(ip):
                logger.warning("blocked_blacklisted_ip", ip=ip, endpoint=endpoint)
                return RateLimitDecision(Decision.BLOCKED, reason="blacklisted")
            checks = await self._evaluate(ip, endpoint, api_key)
        except StoreUnavailableError as e:
            logger.warning("rate_limit_check_degraded", ip=ip, error=str(e))
            self.metrics.record_metric(COMPONENT, MetricNames.RATE_LIMIT_DEGRADED)
            return RateLimitDecision(Decision.ALLOWED, reason="store_unavailable", degraded=True)

        counts = {c.name: c.count for c in checks}
        exceeded = [c for c in checks if c.exceeded]
        if not exceeded:
            self.metrics.record_metric(COMPONENT, MetricNames.RATE_LIMIT_ALLOWED)
            return RateLimitDecision(Decision.ALLOWED, reason="within_limit", counts=counts)

        await self._on_exceeded(ip, endpoint, api_key, exceeded)
        return RateLimitDecision(
            Decision.RATE_LIMITED,
            reason="exceeded:" + ",".join(c.name for c in exceeded),
            counts=counts,
            retry_after=self.config.window_seconds,
        )

    async def _evaluate(
        self,
        ip: str,
        endpoint: Optional[str],
        api_key: Optional[str],
    ) -> List[LimitCheck]:
        cfg = self.config
        now = self.clock()
        window_start = now - timedelta(seconds=cfg.window_seconds)

        checks = [
            LimitCheck(
                "ip",
                await self.store.count_events(ip, EventKind.REQUEST, window_start),
                cfg.per_ip_per_minute,
                cfg.burst_size,
            ),
            LimitCheck(
                "ip_hour",
                await self.store.count_events(ip, EventKind.REQUEST, now - timedelta(hours=1)),
                cfg.per_ip_per_hour,
                cfg.burst_size,
            ),
            LimitCheck(
                "ip_day",
                await self.store.count_events(ip, EventKind.REQUEST, now - timedelta(days=1)),
                cfg.per_ip_per_day,
                cfg.burst_size,
            ),
        ]
        if endpoint:
            checks.append(LimitCheck(
                "endpoint",
                await self.store.count_events(ip, EventKind.REQUEST, window_start, endpoint=endpoint),
                cfg.per_endpoint_per_minute,
                cfg.burst_size,
            ))
        if api_key:
            checks.append(LimitCheck(
                "api_key",
                await self.store.count_api_key_events(api_key, window_start),
                cfg.per_api_key_per_minute,
                cfg.burst_size,
            ))
        return checks

    async def _on_exceeded(
        self,
        ip: str,
        endpoint: Optional[str],
        api_key: Optional[str],
        exceeded: List[LimitCheck],
    ) -> None:
        first = exceeded[0]
        logger.warning(
            "rate_limit_exceeded",
            ip=ip,
            endpoint=endpoint,
            limit=first.name,
            count=first.count,
            ceiling=first.ceiling,
        )
        self.metrics.record_metric(COMPONENT, MetricNames.RATE_LIMIT_HITS, tags={"limit": first.name})
        now = self.clock()
        # One alert per IP per window; later denies in the same window are only recorded
        try:
            first_in_window = await self.store.count_events(
                ip, EventKind.RATE_LIMIT, now - timedelta(seconds=self.config.window_seconds)
            ) == 0
        except StoreUnavailableError as e:
            logger.warning("rate_limit_history_unavailable", ip=ip, error=str(e))
            first_in_window = True
        try:
            await self.store.insert_event(
                ip,
                EventKind.RATE_LIMIT,
                endpoint=endpoint,
                api_key=api_key,
                metadata={
                    "reason": "exceeded",
                    "limits": [c.name for c in exceeded],
                    "count": first.count,
                    "ceiling": first.ceiling,
                },
                timestamp=now,
            )
        except StoreUnavailableError as e:
            logger.warning("rate_limit_event_not_recorded", ip=ip, error=str(e))
        if not first_in_window:
            return
        await self.alerter.send_alert(
            COMPONENT,
            AlertLevel.WARNING,
            "rate_limit_exceeded",
            f"Rate limit exceeded for {ip} ({first.name}: {first.count}/{first.ceiling})",
        )

    async def record(
        self,
        ip: str,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        status_code: Optional[int] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Append a ``request`` event. Returns False if the store rejected it."""
        ip = normalize_ip(ip)
        metadata: Dict[str, Any] = {}
        if status_code is not None:
            metadata["status_code"] = int(status_code)
        if user_agent:
            metadata["user_agent"] = user_agent[:256]
        try:
            await self.store.insert_event(
                ip,
                EventKind.REQUEST,
                endpoint=endpoint,
                api_key=api_key,
                metadata=metadata,
                timestamp=self.clock(),
            )
        except StoreUnavailableError as e:
            logger.warning("request_not_recorded", ip=ip, endpoint=endpoint, error=str(e))
            return False
        return True

    async def stats(self, ip: str) -> Dict[str, Any]:
        """Current window counts and limits for one IP."""
        ip = normalize_ip(ip)
        cfg = self.config
        now = self.clock()
        result: Dict[str, Any] = {
            "ip": ip,
            "window_seconds": cfg.window_seconds,
            "limits": {
                "per_minute": cfg.per_ip_per_minute,
                "per_hour": cfg.per_ip_per_hour,
                "per_day": cfg.per_ip_per_day,
                "burst": cfg.burst_size,
            },
            "degraded": False,
        }
        try:
            result["counts"] = {
                "window": await self.store.count_events(
                    ip, EventKind.REQUEST, now - timedelta(seconds=cfg.window_seconds)
                ),
                "hour": await self.store.count_events(ip, EventKind.REQUEST, now - timedelta(hours=1)),
                "day": await self.store.count_events(ip, EventKind.REQUEST, now - timedelta(days=1)),
            }
            result["events"] = await self.store.window_stats(ip, now - timedelta(days=1))
            result["whitelisted"] = await self.access_list.is_whitelisted(ip)
            result["blacklisted"] = await self.access_list.is_blacklisted(ip)
        except StoreUnavailableError as e:
            logger.warning("rate_limit_stats_unavailable", ip=ip, error=str(e))
            result["degraded"] = True
        return result

    async def reset(self, ip: str, endpoint: Optional[str] = None) -> int:
        """Delete counted events for the IP (optionally one endpoint). Store errors propagate."""
        ip = normalize_ip(ip)
        deleted = await self.store.delete_events(ip, endpoint=endpoint)
        logger.info("rate_limit_reset", ip=ip, endpoint=endpoint, deleted=deleted)
        return deleted
