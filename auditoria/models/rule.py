"""
Rule Tables.

`rule_applications` is append-only. Usage statistics are aggregated from it,
counting only the pass recorded in `rule_application_passes` for each
radicado.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Enum, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from auditoria.core.enums import RuleActionKind, RuleType
from auditoria.models.base import Base, TimeStampedModel, UUIDModel
from auditoria.schemas.rule import Rule, RuleApplication


class RuleRecord(Base, UUIDModel, TimeStampedModel):
    """Administrator-authored billing rule."""

    __tablename__ = "rules"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    rule_type: Mapped[RuleType] = mapped_column(Enum(RuleType), nullable=False, index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        unique=True,
        comment="Creation order, breaks priority ties",
    )
    scope: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    interpretation: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    interpretation_errors: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    change_history: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    def apply_schema(self, rule: Rule) -> None:
        """Copy mutable fields from a schema instance."""
        data = rule.model_dump(mode="json")
        self.name = rule.name
        self.description = rule.description
        self.rule_type = rule.rule_type
        self.active = rule.active
        self.priority = rule.priority
        self.scope = data["scope"]
        self.interpretation = data["interpretation"]
        self.interpretation_errors = data["interpretation_errors"]
        self.change_history = data["change_history"]
        self.created_by = rule.created_by

    @classmethod
    def from_schema(cls, rule: Rule, sequence: int) -> "RuleRecord":
        record = cls(id=rule.id, sequence=sequence)
        record.apply_schema(rule)
        return record

    def to_schema(self) -> Rule:
        return Rule.model_validate(
            {
                "id": self.id,
                "name": self.name,
                "description": self.description,
                "rule_type": self.rule_type,
                "active": self.active,
                "priority": self.priority,
                "sequence": self.sequence,
                "scope": self.scope,
                "interpretation": self.interpretation,
                "interpretation_errors": self.interpretation_errors or [],
                "change_history": self.change_history or [],
                "created_by": self.created_by,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )


class RuleApplicationRecord(Base, UUIDModel):
    """One rule effect on one radicado item during one pass."""

    __tablename__ = "rule_applications"

    rule_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    radicado_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    pass_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    line_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    action: Mapped[RuleActionKind] = mapped_column(Enum(RuleActionKind), nullable=False)
    amount_affected: Mapped[Decimal] = mapped_column(Numeric(16, 2), default=0, nullable=False)
    glosas_avoided: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @classmethod
    def from_schema(cls, application: RuleApplication) -> "RuleApplicationRecord":
        return cls(**application.model_dump())

    def to_schema(self) -> RuleApplication:
        return RuleApplication.model_validate(self, from_attributes=True)


class RuleApplicationPassRecord(Base):
    """Latest recorded pass per radicado."""

    __tablename__ = "rule_application_passes"

    radicado_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    pass_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
