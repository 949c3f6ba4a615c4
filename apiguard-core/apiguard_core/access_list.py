"""
IP Access List Manager
======================
Whitelist/blacklist entries with optional expiry.

Per IP the effective state is derived at read time from the latest entry of each
list type:

    Unlisted -> TemporarilyBlocked (expires_at set) -> Unlisted (on expiry)
    Unlisted -> PermanentlyBlocked (until manual removal)

Whitelisted is orthogonal and always wins over a block. Expiry is lazy: an entry
whose ``expires_at`` is not in the future is ignored, nothing is swept.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog

from .exceptions import ValidationError
from .ip_utils import normalize_ip
from .models import IPListEntry, ListType, utcnow
from .store import EventStore

logger = structlog.get_logger(__name__)


class IPAccessListManager:
    """
    Manages whitelist/blacklist entries in ``ip_management``.

    Store errors propagate: operator commands must see when a write failed.
    """

    def __init__(self, store: EventStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def whitelist_add(
        self,
        ip: str,
        ttl_minutes: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> IPListEntry:
        """Whitelist an IP; ``ttl_minutes`` omitted or 0 means permanent."""
        return await self._add(ListType.WHITELIST, ip, ttl_minutes, reason)

    async def blacklist_add(
        self,
        ip: str,
        ttl_minutes: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> IPListEntry:
        """Blacklist an IP; ``ttl_minutes`` omitted or 0 means permanent."""
        return await self._add(ListType.BLACKLIST, ip, ttl_minutes, reason)

    async def _add(
        self,
        list_type: ListType,
        ip: str,
        ttl_minutes: Optional[int],
        reason: Optional[str],
    ) -> IPListEntry:
        ip = normalize_ip(ip)
        if ttl_minutes is not None and ttl_minutes < 0:
            raise ValidationError(f"ttl_minutes must be >= 0, got {ttl_minutes}")

        now = self.clock()
        expires_at = now + timedelta(minutes=ttl_minutes) if ttl_minutes else None
        entry = await self.store.insert_list_entry(
            ip, list_type, expires_at=expires_at, reason=reason, created_at=now
        )
        logger.info(
            "ip_list_entry_added",
            ip=ip,
            list_type=list_type.value,
            expires_at=expires_at.isoformat() if expires_at else None,
            reason=reason,
        )
        return entry

    async def remove(self, ip: str, list_type: ListType) -> int:
        """
        Manually lift an entry (unblock / un-whitelist).

        Active rows are expired rather than deleted so that violation history,
        which is counted from blacklist rows, is preserved.
        """
        ip = normalize_ip(ip)
        removed = await self.store.expire_list_entries(ip, list_type, self.clock())
        logger.info("ip_list_entry_removed", ip=ip, list_type=ListType(list_type).value, rows=removed)
        return removed

    async def is_whitelisted(self, ip: str) -> bool:
        return await self._is_listed(ip, ListType.WHITELIST)

    async def is_blacklisted(self, ip: str) -> bool:
        return await self._is_listed(ip, ListType.BLACKLIST)

    async def _is_listed(self, ip: str, list_type: ListType) -> bool:
        return await self.active_entry(ip, list_type) is not None

    async def active_entry(self, ip: str, list_type: ListType) -> Optional[IPListEntry]:
        """The authoritative entry for the IP if it is still in force."""
        entry = await self.store.latest_list_entry(normalize_ip(ip), ListType(list_type))
        if entry is None or not entry.is_active(self.clock()):
            return None
        return entry

    async def list(self, list_type: Optional[ListType] = None) -> List[IPListEntry]:
        """Enumerate active entries, optionally filtered by list type."""
        return await self.store.active_list_entries(
            self.clock(), ListType(list_type) if list_type else None
        )

    async def violation_count(self, ip: str, lookback: timedelta) -> int:
        """Blacklist entries created for the IP within the lookback window."""
        since = self.clock() - lookback
        return await self.store.count_list_entries_since(normalize_ip(ip), ListType.BLACKLIST, since)
