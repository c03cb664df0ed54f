from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id, utcnow

CONTROL_CATEGORIES = ("technical", "administrative", "physical", "operational")
CONTROL_STATUSES = ("draft", "active", "under_review", "deprecated")
MAPPING_STRENGTHS = ("primary", "supporting", "compensating")


class Control(Base):
    __tablename__ = "controls"
    __table_args__ = (
        UniqueConstraint("org_id", "identifier", name="uq_controls_identifier"),
        Index("idx_controls_org_status", "org_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    identifier: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    implementation_guidance: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False)

    # ── Ownership ──
    owner_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    secondary_owner_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"))

    # ── Origin ──
    is_custom: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    source_template_id: Mapped[str | None] = mapped_column(String(100))

    evidence_requirements: Mapped[str | None] = mapped_column(Text)
    test_criteria: Mapped[str | None] = mapped_column(Text)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ControlMapping(Base):
    __tablename__ = "control_mappings"
    __table_args__ = (
        UniqueConstraint("org_id", "control_id", "requirement_id", name="uq_control_mappings_pair"),
        Index("idx_control_mappings_requirement", "requirement_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    control_id: Mapped[str] = mapped_column(ForeignKey("controls.id", ondelete="CASCADE"), nullable=False)
    requirement_id: Mapped[str] = mapped_column(ForeignKey("requirements.id", ondelete="CASCADE"), nullable=False)
    strength: Mapped[str] = mapped_column(String(20), default="primary", nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    mapped_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
