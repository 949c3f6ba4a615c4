"""
Event Store Adapter
===================
Count/insert/select-latest operations over ``security_events`` and ``ip_management``.

Every public method is a single statement. Driver and connection failures are
converted into StoreUnavailableError; callers decide whether to absorb them.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import delete, distinct, func, select, update, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ..exceptions import StoreUnavailableError
from ..models import EventKind, IPListEntry, ListType, as_utc, utcnow
from .database import Database
from .tables import IPManagementRow, SecurityEventRow

logger = structlog.get_logger(__name__)


def _to_entry(row: IPManagementRow) -> IPListEntry:
    return IPListEntry(
        ip_address=row.ip_address,
        list_type=ListType(row.list_type),
        reason=row.reason,
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
    )


class EventStore:
    """
    Adapter over the shared relational store.

    Holds no state besides the database handle, so any number of instances
    (and processes) may share the same tables.
    """

    def __init__(self, database: Database):
        self.database = database

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self.database.session() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(str(e), operation=operation) from e

    async def create_schema(self) -> None:
        try:
            await self.database.create_all()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(str(e), operation="create_schema") from e

    async def ping(self) -> bool:
        """Return True if the store answers a trivial query."""
        try:
            async with self._session("ping") as session:
                await session.execute(select(1))
            return True
        except StoreUnavailableError:
            return False

    # ------------------------------------------------------------------
    # security_events
    # ------------------------------------------------------------------

    async def insert_event(
        self,
        ip: str,
        kind: EventKind,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        row = SecurityEventRow(
            ip_address=ip,
            event_kind=EventKind(kind).value,
            endpoint=endpoint,
            api_key=api_key,
            timestamp=timestamp or utcnow(),
            metadata_=metadata or {},
        )
        async with self._session("insert_event") as session:
            session.add(row)

    async def count_events(
        self,
        ip: str,
        kind: EventKind,
        since: datetime,
        until: Optional[datetime] = None,
        endpoint: Optional[str] = None,
    ) -> int:
        stmt = select(func.count(SecurityEventRow.id)).where(
            SecurityEventRow.ip_address == ip,
            SecurityEventRow.event_kind == EventKind(kind).value,
            SecurityEventRow.timestamp >= since,
        )
        if until is not None:
            stmt = stmt.where(SecurityEventRow.timestamp < until)
        if endpoint is not None:
            stmt = stmt.where(SecurityEventRow.endpoint == endpoint)
        async with self._session("count_events") as session:
            return int((await session.execute(stmt)).scalar_one() or 0)

    async def count_api_key_events(self, api_key: str, since: datetime) -> int:
        """Requests made with an API key in the window, across all IPs."""
        stmt = select(func.count(SecurityEventRow.id)).where(
            SecurityEventRow.api_key == api_key,
            SecurityEventRow.event_kind == EventKind.REQUEST.value,
            SecurityEventRow.timestamp >= since,
        )
        async with self._session("count_api_key_events") as session:
            return int((await session.execute(stmt)).scalar_one() or 0)

    async def count_error_events(self, ip: str, since: datetime, min_status: int = 400) -> Tuple[int, int]:
        """Return (errors, total) request counts; errors have status_code >= min_status."""
        status = SecurityEventRow.metadata_["status_code"].as_integer()
        stmt = select(
            func.count(SecurityEventRow.id).filter(status >= min_status),
            func.count(SecurityEventRow.id),
        ).where(
            SecurityEventRow.ip_address == ip,
            SecurityEventRow.event_kind == EventKind.REQUEST.value,
            SecurityEventRow.timestamp >= since,
        )
        async with self._session("count_error_events") as session:
            errors, total = (await session.execute(stmt)).one()
        return int(errors or 0), int(total or 0)

    async def count_distinct_endpoints(self, ip: str, since: datetime) -> int:
        stmt = select(func.count(distinct(SecurityEventRow.endpoint))).where(
            SecurityEventRow.ip_address == ip,
            SecurityEventRow.event_kind == EventKind.REQUEST.value,
            SecurityEventRow.timestamp >= since,
            SecurityEventRow.endpoint.is_not(None),
        )
        async with self._session("count_distinct_endpoints") as session:
            return int((await session.execute(stmt)).scalar_one() or 0)

    async def count_distinct_user_agents(self, ip: str, since: datetime) -> int:
        user_agent = SecurityEventRow.metadata_["user_agent"].as_string()
        stmt = select(func.count(distinct(user_agent))).where(
            SecurityEventRow.ip_address == ip,
            SecurityEventRow.event_kind == EventKind.REQUEST.value,
            SecurityEventRow.timestamp >= since,
        )
        async with self._session("count_distinct_user_agents") as session:
            return int((await session.execute(stmt)).scalar_one() or 0)

    async def request_counts_by_ip(
        self,
        since: datetime,
        min_count: Optional[int] = None,
    ) -> List[Tuple[str, int]]:
        """Request counts per IP in the window, busiest first; optionally only counts > min_count."""
        total = func.count(SecurityEventRow.id).label("total")
        stmt = (
            select(SecurityEventRow.ip_address, total)
            .where(
                SecurityEventRow.event_kind == EventKind.REQUEST.value,
                SecurityEventRow.timestamp >= since,
            )
            .group_by(SecurityEventRow.ip_address)
            .order_by(total.desc())
        )
        if min_count is not None:
            stmt = stmt.having(func.count(SecurityEventRow.id) > min_count)
        async with self._session("request_counts_by_ip") as session:
            rows = (await session.execute(stmt)).all()
        return [(ip, int(count)) for ip, count in rows]

    async def active_ips(self, since: datetime) -> List[str]:
        stmt = (
            select(distinct(SecurityEventRow.ip_address))
            .where(
                SecurityEventRow.event_kind == EventKind.REQUEST.value,
                SecurityEventRow.timestamp >= since,
            )
            .order_by(SecurityEventRow.ip_address)
        )
        async with self._session("active_ips") as session:
            return list((await session.execute(stmt)).scalars().all())

    async def delete_events(
        self,
        ip: str,
        kinds: Iterable[EventKind] = (EventKind.REQUEST, EventKind.RATE_LIMIT),
        endpoint: Optional[str] = None,
    ) -> int:
        stmt = delete(SecurityEventRow).where(
            SecurityEventRow.ip_address == ip,
            SecurityEventRow.event_kind.in_([EventKind(k).value for k in kinds]),
        )
        if endpoint is not None:
            stmt = stmt.where(SecurityEventRow.endpoint == endpoint)
        async with self._session("delete_events") as session:
            result = await session.execute(stmt)
        return int(result.rowcount or 0)

    async def window_stats(self, ip: str, since: datetime) -> Dict[str, Any]:
        """Count and first/last timestamps of events per kind for one IP."""
        stmt = (
            select(
                SecurityEventRow.event_kind,
                func.count(SecurityEventRow.id),
                func.min(SecurityEventRow.timestamp),
                func.max(SecurityEventRow.timestamp),
            )
            .where(SecurityEventRow.ip_address == ip, SecurityEventRow.timestamp >= since)
            .group_by(SecurityEventRow.event_kind)
        )
        async with self._session("window_stats") as session:
            rows = (await session.execute(stmt)).all()
        return {
            kind: {
                "count": int(count),
                "first_seen": as_utc(first).isoformat() if first else None,
                "last_seen": as_utc(last).isoformat() if last else None,
            }
            for kind, count, first, last in rows
        }

    async def event_counts_by_kind(self, since: datetime) -> Dict[str, int]:
        stmt = (
            select(SecurityEventRow.event_kind, func.count(SecurityEventRow.id))
            .where(SecurityEventRow.timestamp >= since)
            .group_by(SecurityEventRow.event_kind)
        )
        async with self._session("event_counts_by_kind") as session:
            rows = (await session.execute(stmt)).all()
        return {kind: int(count) for kind, count in rows}

    async def recent_events(
        self,
        kinds: Sequence[EventKind],
        limit: int = 20,
        ip: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        stmt = (
            select(SecurityEventRow)
            .where(SecurityEventRow.event_kind.in_([EventKind(k).value for k in kinds]))
            .order_by(SecurityEventRow.timestamp.desc(), SecurityEventRow.id.desc())
            .limit(limit)
        )
        if ip is not None:
            stmt = stmt.where(SecurityEventRow.ip_address == ip)
        async with self._session("recent_events") as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            {
                "ip_address": row.ip_address,
                "event_kind": row.event_kind,
                "endpoint": row.endpoint,
                "timestamp": as_utc(row.timestamp).isoformat(),
                "metadata": dict(row.metadata_ or {}),
            }
            for row in rows
        ]

    # ------------------------------------------------------------------
    # ip_management
    # ------------------------------------------------------------------

    async def insert_list_entry(
        self,
        ip: str,
        list_type: ListType,
        expires_at: Optional[datetime],
        reason: Optional[str],
        created_at: datetime,
    ) -> IPListEntry:
        row = IPManagementRow(
            ip_address=ip,
            list_type=ListType(list_type).value,
            expires_at=expires_at,
            reason=reason,
            created_at=created_at,
        )
        async with self._session("insert_list_entry") as session:
            session.add(row)
        return IPListEntry(
            ip_address=ip,
            list_type=ListType(list_type),
            reason=reason,
            created_at=as_utc(created_at),
            expires_at=as_utc(expires_at),
        )

    async def latest_list_entry(self, ip: str, list_type: ListType) -> Optional[IPListEntry]:
        stmt = (
            select(IPManagementRow)
            .where(
                IPManagementRow.ip_address == ip,
                IPManagementRow.list_type == ListType(list_type).value,
            )
            .order_by(IPManagementRow.created_at.desc(), IPManagementRow.id.desc())
            .limit(1)
        )
        async with self._session("latest_list_entry") as session:
            row = (await session.execute(stmt)).scalars().first()
        return _to_entry(row) if row is not None else None

    async def active_list_entries(
        self,
        now: datetime,
        list_type: Optional[ListType] = None,
    ) -> List[IPListEntry]:
        """Authoritative (latest) entry per (ip, list_type), keeping only unexpired ones."""
        ranked = select(
            IPManagementRow,
            func.row_number().over(
                partition_by=(IPManagementRow.ip_address, IPManagementRow.list_type),
                order_by=(IPManagementRow.created_at.desc(), IPManagementRow.id.desc()),
            ).label("row_rank"),
        )
        if list_type is not None:
            ranked = ranked.where(IPManagementRow.list_type == ListType(list_type).value)
        ranked = ranked.subquery()
        latest = aliased(IPManagementRow, ranked)

        stmt = (
            select(latest)
            .where(
                ranked.c.row_rank == 1,
                or_(latest.expires_at.is_(None), latest.expires_at > now),
            )
            .order_by(latest.created_at.desc(), latest.id.desc())
        )
        async with self._session("active_list_entries") as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_entry(row) for row in rows]

    async def expire_list_entries(self, ip: str, list_type: ListType, now: datetime) -> int:
        """Mark currently active entries as expired at ``now``; history rows are kept."""
        stmt = (
            update(IPManagementRow)
            .where(
                IPManagementRow.ip_address == ip,
                IPManagementRow.list_type == ListType(list_type).value,
                or_(IPManagementRow.expires_at.is_(None), IPManagementRow.expires_at > now),
            )
            .values(expires_at=now)
        )
        async with self._session("expire_list_entries") as session:
            result = await session.execute(stmt)
        return int(result.rowcount or 0)

    async def count_list_entries_since(self, ip: str, list_type: ListType, since: datetime) -> int:
        stmt = select(func.count(IPManagementRow.id)).where(
            IPManagementRow.ip_address == ip,
            IPManagementRow.list_type == ListType(list_type).value,
            IPManagementRow.created_at >= since,
        )
        async with self._session("count_list_entries_since") as session:
            return int((await session.execute(stmt)).scalar_one() or 0)
