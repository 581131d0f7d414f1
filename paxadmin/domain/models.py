from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    # Fetch server-side timestamps on flush; async sessions cannot lazy-load them later.
    __mapper_args__ = {"eager_defaults": True}


class TenantStatus(str, Enum):
    PENDING = "PENDING"
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


# Statuses allowed to reach a tenant database through module-scoped access.
OPERATIONAL_STATUSES = frozenset({TenantStatus.ACTIVE.value, TenantStatus.TRIAL.value})


class Tenant(Base):
    __tablename__ = "tenants"
    __table_args__ = (
        Index("ix_tenants_status", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # Human code doubles as the seed for database and role identifiers.
    code: Mapped[str] = mapped_column(String(63), unique=True)
    document: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String)
    trade_name: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default=TenantStatus.PENDING.value)
    is_provisioned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    provisioned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    database_host: Mapped[str | None] = mapped_column(String, nullable=True)
    database_port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    database_name: Mapped[str | None] = mapped_column(String, nullable=True)
    database_user: Mapped[str | None] = mapped_column(String, nullable=True)
    # Ciphertext only; see services.crypto.credentials.
    database_pass: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    modules: Mapped[list[TenantModule]] = relationship(
        back_populates="tenant",
        cascade="all, delete-orphan",
        order_by=lambda: [TenantModule.position, TenantModule.created_at, TenantModule.id],
    )


class Module(Base):
    __tablename__ = "modules"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    code: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Free-form schema version tag copied onto TenantModule.schema_version.
    version: Mapped[str] = mapped_column(String, default="1.0.0")
    is_core: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_custom: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    repository_url: Mapped[str | None] = mapped_column(String, nullable=True)
    # Folder name under the workspace root; required for custom modules.
    module_path: Mapped[str | None] = mapped_column(String, nullable=True)
    migrations_path: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantModule(Base):
    __tablename__ = "tenant_modules"
    __table_args__ = (
        UniqueConstraint("tenant_id", "module_id", name="uq_tenant_modules_pair"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    module_id: Mapped[str] = mapped_column(String, ForeignKey("modules.id", ondelete="CASCADE"), index=True)
    # Selection order within the tenant; core modules come first.
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    disabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    migrations_applied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    migrations_applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    schema_version: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    tenant: Mapped[Tenant] = relationship(back_populates="modules")
    module: Mapped[Module] = relationship(lazy="joined")


class Plan(Base):
    __tablename__ = "plans"

    # Plans are only templates for the initial module set of a tenant.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PlanModule(Base):
    __tablename__ = "plan_modules"

    plan_id: Mapped[str] = mapped_column(String, ForeignKey("plans.id", ondelete="CASCADE"), primary_key=True)
    module_id: Mapped[str] = mapped_column(String, ForeignKey("modules.id", ondelete="CASCADE"), primary_key=True)


class TenantContact(Base):
    __tablename__ = "tenant_contacts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    # Free text such as "finance" or "IT"; not an access role.
    role: Mapped[str | None] = mapped_column(String, nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
