"""
Security Guard
==============
One object that wires the store, access list, limiter, detectors and
response coordinator from a ``GuardConfig``.

Usage:
    guard = SecurityGuard.from_config(GuardConfig.from_env())
    await guard.create_schema()

    decision = await guard.check("203.0.113.7", endpoint="/v1/ingest")
    if decision.allowed:
        ...
    await guard.record("203.0.113.7", endpoint="/v1/ingest", status_code=200)

    await guard.close()
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from .abuse import AbuseDetector, AbuseReport
from .access_list import IPAccessListManager
from .alerts import Alerter, AlertSink, LogAlertSink, WebhookAlertSink
from .config import GuardConfig
from .ddos import DDoSProtector, DDoSReport
from .geolocation import GeoLocator
from .ip_utils import normalize_ip
from .metrics import MetricsRecorder
from .models import IPListEntry, ListType, RateLimitDecision, ResponseOutcome, utcnow
from .rate_limit import SlidingWindowLimiter
from .responder import AutomaticResponder
from .store import Database, EventStore

logger = structlog.get_logger(__name__)


class SecurityGuard:
    """Facade over the protection components sharing one store and one clock."""

    def __init__(
        self,
        config: GuardConfig,
        store: EventStore,
        alerter: Optional[Alerter] = None,
        metrics: Optional[MetricsRecorder] = None,
        geolocator: Optional[GeoLocator] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.store = store
        self.clock = clock
        self.alerter = alerter or Alerter()
        self.metrics = metrics or MetricsRecorder(service=config.service_name)

        self.access_list = IPAccessListManager(store, clock=clock)
        self.responder = AutomaticResponder(
            store, self.access_list, self.alerter, self.metrics, config.escalation, clock=clock
        )
        self.limiter = SlidingWindowLimiter(
            store, self.access_list, config.rate_limit, self.alerter, self.metrics, clock=clock
        )
        self.abuse = AbuseDetector(
            store, self.access_list, self.responder, config.abuse, self.metrics, clock=clock
        )
        self.ddos = DDoSProtector(
            store,
            self.access_list,
            self.responder,
            config.ddos,
            geolocator=geolocator,
            alerter=self.alerter,
            metrics=self.metrics,
            clock=clock,
        )

    @classmethod
    def from_config(
        cls,
        config: GuardConfig,
        alert_sinks: Optional[List[AlertSink]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "SecurityGuard":
        """Build the guard and its collaborators (database, alert sinks, geolocation)."""
        db = config.database
        database = Database.from_url(
            db.url, pool_size=db.pool_size, max_overflow=db.max_overflow, echo=db.echo
        )

        sinks: List[AlertSink] = list(alert_sinks) if alert_sinks else [LogAlertSink()]
        if config.alerting.webhook_url:
            sinks.append(WebhookAlertSink(config.alerting.webhook_url, timeout=config.alerting.timeout))

        geolocator = None
        if config.ddos.geo_filtering_enabled:
            geolocator = GeoLocator(config.geolocation.api_url, timeout=config.geolocation.timeout)

        return cls(
            config,
            EventStore(database),
            alerter=Alerter(sinks),
            geolocator=geolocator,
            clock=clock,
        )

    async def create_schema(self) -> None:
        await self.store.create_schema()

    async def close(self) -> None:
        await self.alerter.aclose()
        await self.ddos.aclose()
        await self.store.database.close()

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    async def check(
        self,
        ip: str,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> RateLimitDecision:
        return await self.limiter.check(ip, endpoint, api_key)

    async def record(
        self,
        ip: str,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        status_code: Optional[int] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        return await self.limiter.record(ip, endpoint, api_key, status_code, user_agent)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def stats(self, ip: Optional[str] = None) -> Dict[str, Any]:
        """Per-IP window stats, or subsystem-wide event counts when no IP is given."""
        if ip:
            return await self.limiter.stats(ip)
        result = await self.abuse.stats()
        result["recent_detections"] = await self.abuse.recent_detections()
        return result

    async def reset(self, ip: str, endpoint: Optional[str] = None) -> int:
        return await self.limiter.reset(ip, endpoint)

    async def analyze(self, ip: Optional[str] = None) -> List[AbuseReport]:
        """Abuse analysis for one IP, or a sweep over every recently active IP."""
        if ip:
            return [await self.abuse.check_ip(ip)]
        return await self.abuse.analyze_all()

    async def block(
        self,
        ip: str,
        ttl_minutes: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> IPListEntry:
        entry = await self.access_list.blacklist_add(ip, ttl_minutes, reason or "manual")
        logger.warning("ip_blocked_manually", ip=entry.ip_address, ttl_minutes=ttl_minutes, reason=reason)
        return entry

    async def unblock(self, ip: str) -> int:
        return await self.access_list.remove(normalize_ip(ip), ListType.BLACKLIST)

    async def whitelist(
        self,
        ip: str,
        ttl_minutes: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> IPListEntry:
        return await self.access_list.whitelist_add(ip, ttl_minutes, reason or "manual")

    async def list_entries(self, list_type: Optional[ListType] = None) -> List[IPListEntry]:
        return await self.access_list.list(list_type)

    async def monitor(self, current_connections: Optional[int] = None) -> DDoSReport:
        return await self.ddos.sweep(current_connections)

    async def respond(self, ip: str, reason: str, message: str) -> ResponseOutcome:
        return await self.responder.respond(ip, reason, message)
