"""SQLAlchemy ORM models for the shortlink service.

Data Model Layout
=================
::
    users ─┬─< domains ──< links >── visits (1:1)
           │                 │
           └────────< links  └──< visit_keys (country / referrer maps)

    hosts   (previously seen target hostnames, bannable)
    ips     (anonymous cooldown window, one row per source address)

Key Behaviours
===============
- ``(domain_id, address)`` is unique; links on the default domain
  (``domain_id IS NULL``) are additionally covered by a partial unique index
  because NULLs never collide in a plain unique constraint.
- ``visit_count`` and every visit counter only ever move up, through
  ``UPDATE ... SET x = x + n`` statements issued by the store.
- ``visit_keys`` is the physical form of the open-ended country/referrer maps;
  one row per distinct key so increments stay row-level atomic.
- Timestamps are written from Python in UTC so PostgreSQL and SQLite agree.

Classes:
    User, Domain, Host, IP, Link, Visit, VisitKey
"""

import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from shortlink.clock import utcnow
from shortlink.database import Base

__all__ = ["Domain", "Host", "IP", "Link", "User", "Visit", "VisitKey"]


class TimestampMixin:
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    apikey: Mapped[str | None] = mapped_column(String(64), unique=True, index=True)
    banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    banned_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"))
    cooldowns: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', banned={self.banned})>"


class Domain(TimestampMixin, Base):
    __tablename__ = "domains"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    homepage: Mapped[str | None] = mapped_column(Text)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    banned_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"))

    def __repr__(self) -> str:
        return f"<Domain(id={self.id}, address='{self.address}', banned={self.banned})>"


class Host(TimestampMixin, Base):
    __tablename__ = "hosts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    banned_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"))


class IP(TimestampMixin, Base):
    __tablename__ = "ips"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ip: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)


class Link(TimestampMixin, Base):
    __tablename__ = "links"
    __table_args__ = (
        UniqueConstraint("domain_id", "address", name="uq_links_domain_address"),
        Index(
            "uq_links_default_domain_address",
            "address",
            unique=True,
            postgresql_where=text("domain_id IS NULL"),
            sqlite_where=text("domain_id IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    target: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    password: Mapped[str | None] = mapped_column(String(128))
    expire_in: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    domain_id: Mapped[int | None] = mapped_column(ForeignKey("domains.id", ondelete="CASCADE"))
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    banned_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"))
    visit_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<Link(id={self.id}, address='{self.address}', visit_count={self.visit_count})>"


class Visit(Base):
    __tablename__ = "visits"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    link_id: Mapped[int] = mapped_column(
        ForeignKey("links.id", ondelete="CASCADE"), unique=True, index=True, nullable=False
    )
    total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    br_chrome: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    br_edge: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    br_firefox: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    br_ie: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    br_opera: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    br_safari: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    br_other: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    os_android: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    os_ios: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    os_linux: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    os_macos: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    os_windows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    os_other: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class VisitKey(Base):
    __tablename__ = "visit_keys"
    __table_args__ = (UniqueConstraint("link_id", "kind", "key", name="uq_visit_keys_link_kind_key"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    link_id: Mapped[int] = mapped_column(ForeignKey("links.id", ondelete="CASCADE"), index=True, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
