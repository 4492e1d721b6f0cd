"""Persistent store accessor for links, domains, hosts, users, visits and IPs.

The store owns an ``async_sessionmaker`` handed in at construction time and
opens one session per operation. Nothing here is a module-level singleton, so
the resolver, the visit aggregator and the cooldown sweeper can all share one
store while running in independent tasks.

Flow Diagram — increment_visit()
================================
::
    ┌──────────────────┐
    │ BEGIN            │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐   INSERT ... ON CONFLICT (link_id)
    │ upsert visits    │── DO UPDATE SET total = total + 1,
    │ row              │   br_x = br_x + 1, os_y = os_y + 1
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ links.visit_count│
    │ = visit_count + 1│
    └────────┬─────────┘
             ▼
    ┌──────────────────┐   existing key ──► count + 1
    │ country/referrer │   new key, below cap ──► insert
    │ key rows         │   new key, cap reached ──► dropped
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ COMMIT           │
    └──────────────────┘

Key Behaviours
===============
- Every counter moves through ``SET x = x + n`` in SQL, never through a
  read-modify-write in Python, so concurrent visits are never lost.
- The distinct-key cap is approximate: two concurrent first-time keys may
  both pass the count check and overshoot the cap by the number of racing
  writers. Existing keys are always incremented.
- Uniqueness violations on link addresses surface as ``AddressConflictError``.
- Connection-level failures surface as ``StoreUnavailableError``.
"""

import datetime
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlink.clock import as_utc, utcnow
from shortlink.enums import Browser, OperatingSystem, StatsKind
from shortlink.errors import AddressConflictError, StoreUnavailableError
from shortlink.models import IP, Domain, Host, Link, User, Visit, VisitKey
from shortlink.schemas import CachedLinkPayload

__all__ = ["LinkKey", "LinkStore", "VisitDelta", "VisitStats"]

logger = logging.getLogger("shortlink.store")

# (domain address or None, link address): the cache coordinates of a link.
LinkKey = tuple[str | None, str]


@dataclass(frozen=True)
class VisitDelta:
    """Buckets touched by a single visit."""

    browser: Browser
    os: OperatingSystem
    country: str | None = None
    referrer: str | None = None


@dataclass
class VisitStats:
    total: int = 0
    browser: dict[str, int] = field(default_factory=lambda: {b.value: 0 for b in Browser})
    os: dict[str, int] = field(default_factory=lambda: {o.value: 0 for o in OperatingSystem})
    country: dict[str, int] = field(default_factory=dict)
    referrer: dict[str, int] = field(default_factory=dict)


class LinkStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, ConnectionError) as exc:
            logger.error(f"Store unavailable: {exc}")
            raise StoreUnavailableError() from exc

    @staticmethod
    def _insert(session: AsyncSession, model: Any):
        if session.get_bind().dialect.name == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    async def ping(self) -> None:
        async with self._session() as session:
            await session.execute(text("SELECT 1"))

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    @staticmethod
    def _link_query():
        return (
            select(Link, User.banned, Domain.address, Domain.banned)
            .outerjoin(User, User.id == Link.user_id)
            .outerjoin(Domain, Domain.id == Link.domain_id)
        )

    @staticmethod
    def _to_payload(row) -> CachedLinkPayload:
        link, owner_banned, domain_address, domain_banned = row
        return CachedLinkPayload(
            id=link.id,
            address=link.address,
            target=link.target,
            domain_id=link.domain_id,
            domain=domain_address,
            user_id=link.user_id,
            password=link.password,
            description=link.description,
            expire_in=as_utc(link.expire_in) if link.expire_in else None,
            banned=link.banned,
            owner_banned=bool(owner_banned),
            domain_banned=bool(domain_banned),
            visit_count=link.visit_count,
            created_at=as_utc(link.created_at),
            updated_at=as_utc(link.updated_at),
        )

    async def find_link(self, domain_id: int | None, address: str) -> CachedLinkPayload | None:
        stmt = self._link_query().where(Link.address == address)
        if domain_id is None:
            stmt = stmt.where(Link.domain_id.is_(None))
        else:
            stmt = stmt.where(Link.domain_id == domain_id)
        async with self._session() as session:
            row = (await session.execute(stmt)).first()
        return self._to_payload(row) if row else None

    async def find_link_by_id(self, link_id: int) -> CachedLinkPayload | None:
        async with self._session() as session:
            row = (await session.execute(self._link_query().where(Link.id == link_id))).first()
        return self._to_payload(row) if row else None

    async def insert_link(self, fields: dict[str, Any]) -> CachedLinkPayload:
        """Insert a link row.

        Raises:
            AddressConflictError: ``(domain_id, address)`` is already taken.
        """
        async with self._session() as session:
            link = Link(**fields)
            session.add(link)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise AddressConflictError() from exc
            link_id = link.id
        payload = await self.find_link_by_id(link_id)
        assert payload is not None, "inserted link must be readable"
        return payload

    async def update_link(self, link_id: int, fields: dict[str, Any]) -> CachedLinkPayload | None:
        async with self._session() as session:
            try:
                await session.execute(update(Link).where(Link.id == link_id).values(**fields, updated_at=utcnow()))
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise AddressConflictError() from exc
        return await self.find_link_by_id(link_id)

    async def delete_link(self, link_id: int) -> bool:
        async with self._session() as session, session.begin():
            await session.execute(delete(VisitKey).where(VisitKey.link_id == link_id))
            await session.execute(delete(Visit).where(Visit.link_id == link_id))
            result = await session.execute(delete(Link).where(Link.id == link_id))
        return bool(result.rowcount)

    async def ban_link(self, link_id: int, banned_by_id: int) -> None:
        async with self._session() as session, session.begin():
            await session.execute(
                update(Link).where(Link.id == link_id).values(banned=True, banned_by_id=banned_by_id, updated_at=utcnow())
            )

    async def list_links(self, user_id: int, skip: int = 0, limit: int = 10) -> tuple[int, list[CachedLinkPayload]]:
        stmt = (
            self._link_query()
            .where(Link.user_id == user_id)
            .order_by(Link.created_at.desc(), Link.id.desc())
            .offset(skip)
            .limit(limit)
        )
        async with self._session() as session:
            total = await session.scalar(select(func.count()).select_from(Link).where(Link.user_id == user_id))
            rows = (await session.execute(stmt)).all()
        return int(total or 0), [self._to_payload(row) for row in rows]

    async def count_links_since(self, user_id: int, since: datetime.datetime) -> int:
        stmt = select(func.count()).select_from(Link).where(Link.user_id == user_id, Link.created_at > since)
        async with self._session() as session:
            return int(await session.scalar(stmt) or 0)

    async def link_keys(self, *, user_id: int | None = None, domain_id: int | None = None) -> list[LinkKey]:
        stmt = select(Domain.address, Link.address).outerjoin(Domain, Domain.id == Link.domain_id)
        if user_id is not None:
            stmt = stmt.where(Link.user_id == user_id)
        if domain_id is not None:
            stmt = stmt.where(Link.domain_id == domain_id)
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
        return [(domain, address) for domain, address in rows]

    # ------------------------------------------------------------------
    # Visits
    # ------------------------------------------------------------------

    async def increment_visit(self, link_id: int, delta: VisitDelta, max_keys: int) -> None:
        now = utcnow()
        visits = Visit.__table__
        browser_column = delta.browser.column
        os_column = delta.os.column

        async with self._session() as session, session.begin():
            stmt = self._insert(session, Visit).values(
                link_id=link_id,
                total=1,
                created_at=now,
                updated_at=now,
                **{browser_column: 1, os_column: 1},
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[visits.c.link_id],
                set_={
                    "total": visits.c.total + 1,
                    browser_column: visits.c[browser_column] + 1,
                    os_column: visits.c[os_column] + 1,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)
            await session.execute(update(Link).where(Link.id == link_id).values(visit_count=Link.visit_count + 1))

            for kind, key in ((StatsKind.COUNTRY, delta.country), (StatsKind.REFERRER, delta.referrer)):
                if key:
                    await self._bump_key(session, link_id, kind, key, max_keys)

    async def _bump_key(self, session: AsyncSession, link_id: int, kind: StatsKind, key: str, max_keys: int) -> bool:
        scope = (VisitKey.link_id == link_id, VisitKey.kind == kind.value)
        result = await session.execute(
            update(VisitKey).where(*scope, VisitKey.key == key).values(count=VisitKey.count + 1)
        )
        if result.rowcount:
            return True

        distinct = await session.scalar(select(func.count()).select_from(VisitKey).where(*scope))
        if distinct >= max_keys:
            return False

        keys = VisitKey.__table__
        stmt = self._insert(session, VisitKey).values(link_id=link_id, kind=kind.value, key=key, count=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=[keys.c.link_id, keys.c.kind, keys.c.key],
            set_={"count": keys.c.count + 1},
        )
        await session.execute(stmt)
        return True

    async def get_visit_stats(self, link_id: int) -> VisitStats:
        stats = VisitStats()
        async with self._session() as session:
            visit = await session.scalar(select(Visit).where(Visit.link_id == link_id))
            keys = (await session.execute(select(VisitKey).where(VisitKey.link_id == link_id))).scalars().all()

        if visit is not None:
            stats.total = visit.total
            stats.browser = {b.value: getattr(visit, b.column) for b in Browser}
            stats.os = {o.value: getattr(visit, o.column) for o in OperatingSystem}
        for row in keys:
            target = stats.country if row.kind == StatsKind.COUNTRY.value else stats.referrer
            target[row.key] = row.count
        return stats

    # ------------------------------------------------------------------
    # Domains and hosts
    # ------------------------------------------------------------------

    async def find_domain_by_host(self, host: str) -> Domain | None:
        async with self._session() as session:
            return await session.scalar(select(Domain).where(Domain.address == host.lower()))

    async def find_domain(self, domain_id: int) -> Domain | None:
        async with self._session() as session:
            return await session.get(Domain, domain_id)

    async def find_domain_for_user(self, user_id: int, address: str) -> Domain | None:
        stmt = select(Domain).where(Domain.address == address.lower(), Domain.user_id == user_id)
        async with self._session() as session:
            return await session.scalar(stmt)

    async def insert_domain(self, user_id: int, address: str, homepage: str | None) -> Domain:
        async with self._session() as session:
            domain = Domain(address=address.lower(), homepage=homepage, user_id=user_id)
            session.add(domain)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise AddressConflictError("Domain is already taken.") from exc
            return domain

    async def detach_domain(self, domain_id: int) -> None:
        async with self._session() as session, session.begin():
            await session.execute(
                update(Domain).where(Domain.id == domain_id).values(user_id=None, homepage=None, updated_at=utcnow())
            )

    async def ban_domain(self, domain_id: int, banned_by_id: int) -> None:
        async with self._session() as session, session.begin():
            await session.execute(
                update(Domain)
                .where(Domain.id == domain_id)
                .values(banned=True, banned_by_id=banned_by_id, updated_at=utcnow())
            )

    async def find_host(self, address: str) -> Host | None:
        async with self._session() as session:
            return await session.scalar(select(Host).where(Host.address == address.lower()))

    async def ban_host(self, address: str, banned_by_id: int) -> None:
        now = utcnow()
        async with self._session() as session, session.begin():
            hosts = Host.__table__
            stmt = self._insert(session, Host).values(
                address=address.lower(), banned=True, banned_by_id=banned_by_id, created_at=now, updated_at=now
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[hosts.c.address],
                set_={"banned": True, "banned_by_id": banned_by_id, "updated_at": now},
            )
            await session.execute(stmt)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def insert_user(self, email: str, apikey: str | None = None) -> User:
        async with self._session() as session:
            user = User(email=email.lower(), apikey=apikey, cooldowns=[])
            session.add(user)
            await session.commit()
            return user

    async def find_user(self, user_id: int) -> User | None:
        async with self._session() as session:
            return await session.get(User, user_id)

    async def find_user_by_apikey(self, apikey: str) -> User | None:
        async with self._session() as session:
            return await session.scalar(select(User).where(User.apikey == apikey))

    async def set_user_apikey(self, user_id: int, apikey: str) -> None:
        async with self._session() as session, session.begin():
            await session.execute(update(User).where(User.id == user_id).values(apikey=apikey, updated_at=utcnow()))

    async def ban_user(self, user_id: int, banned_by_id: int | None = None) -> None:
        async with self._session() as session, session.begin():
            await session.execute(
                update(User).where(User.id == user_id).values(banned=True, banned_by_id=banned_by_id, updated_at=utcnow())
            )

    async def ban_user_links(self, user_id: int, banned_by_id: int) -> None:
        async with self._session() as session, session.begin():
            await session.execute(
                update(Link).where(Link.user_id == user_id).values(banned=True, banned_by_id=banned_by_id, updated_at=utcnow())
            )

    async def add_user_cooldown(self, user_id: int, now: datetime.datetime, window: datetime.timedelta) -> int:
        """Record a strike against a user and return the strikes inside ``window``."""
        async with self._session() as session, session.begin():
            user = await session.get(User, user_id, with_for_update=True)
            if user is None:
                return 0
            recent = [stamp for stamp in user.cooldowns or [] if datetime.datetime.fromisoformat(stamp) > now - window]
            recent.append(now.isoformat())
            user.cooldowns = recent
            return len(recent)

    # ------------------------------------------------------------------
    # IPs (anonymous cooldown)
    # ------------------------------------------------------------------

    async def find_ip(self, ip: str, since: datetime.datetime | None = None) -> IP | None:
        stmt = select(IP).where(IP.ip == ip.lower())
        if since is not None:
            stmt = stmt.where(IP.created_at > since)
        async with self._session() as session:
            return await session.scalar(stmt)

    async def upsert_ip(self, ip: str, now: datetime.datetime) -> None:
        ips = IP.__table__
        async with self._session() as session, session.begin():
            stmt = self._insert(session, IP).values(ip=ip.lower(), created_at=now, updated_at=now)
            stmt = stmt.on_conflict_do_update(
                index_elements=[ips.c.ip],
                set_={"created_at": now, "updated_at": now},
            )
            await session.execute(stmt)

    async def delete_stale_ips(self, before: datetime.datetime) -> int:
        async with self._session() as session, session.begin():
            result = await session.execute(delete(IP).where(IP.created_at < before))
        return int(result.rowcount or 0)
