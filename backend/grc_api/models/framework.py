"""
Framework catalog and per-tenant activation.

Catalog tables (shared across tenants): frameworks, framework_versions, requirements
Tenant tables: org_frameworks, requirement_scopes
"""
from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id, utcnow

FRAMEWORK_CATEGORIES = ("security_privacy", "payment", "data_privacy", "ai_governance", "industry", "custom")
VERSION_STATUSES = ("draft", "active", "deprecated", "sunset")
ORG_FRAMEWORK_STATUSES = ("active", "inactive")


class Framework(Base):
    __tablename__ = "frameworks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    identifier: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    website_url: Mapped[str | None] = mapped_column(String(500))
    is_custom: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class FrameworkVersion(Base):
    __tablename__ = "framework_versions"
    __table_args__ = (
        UniqueConstraint("framework_id", "version", name="uq_framework_versions_version"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    framework_id: Mapped[str] = mapped_column(ForeignKey("frameworks.id", ondelete="CASCADE"), nullable=False)
    version: Mapped[str] = mapped_column(String(50), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    effective_date: Mapped[date | None] = mapped_column(Date)
    sunset_date: Mapped[date | None] = mapped_column(Date)
    changelog: Mapped[str | None] = mapped_column(Text)
    total_requirements: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Requirement(Base):
    """Stored flat; ``depth`` and ``section_order`` give the traversal order."""
    __tablename__ = "requirements"
    __table_args__ = (
        UniqueConstraint("framework_version_id", "identifier", name="uq_requirements_identifier"),
        Index("idx_requirements_order", "framework_version_id", "depth", "section_order"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    framework_version_id: Mapped[str] = mapped_column(
        ForeignKey("framework_versions.id", ondelete="CASCADE"), nullable=False
    )
    parent_id: Mapped[str | None] = mapped_column(ForeignKey("requirements.id", ondelete="CASCADE"))
    identifier: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(1000), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    guidance: Mapped[str | None] = mapped_column(Text)
    section_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    depth: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_assessable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class OrgFramework(Base):
    __tablename__ = "org_frameworks"
    __table_args__ = (
        UniqueConstraint("org_id", "framework_id", name="uq_org_frameworks_framework"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    framework_id: Mapped[str] = mapped_column(ForeignKey("frameworks.id"), nullable=False)
    active_version_id: Mapped[str] = mapped_column(ForeignKey("framework_versions.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    target_date: Mapped[date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)
    activated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class RequirementScope(Base):
    """Absence of a row means the requirement is in scope."""
    __tablename__ = "requirement_scopes"
    __table_args__ = (
        UniqueConstraint("org_id", "requirement_id", name="uq_requirement_scopes_requirement"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    requirement_id: Mapped[str] = mapped_column(ForeignKey("requirements.id", ondelete="CASCADE"), nullable=False)
    in_scope: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    justification: Mapped[str | None] = mapped_column(Text)
    scoped_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
