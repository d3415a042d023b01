"""
Authorization Tables.

Authorized services live in their own table so consumption can be applied
with a single conditional UPDATE (quantity_used + delta <= quantity).
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from auditoria.core.enums import AuthorizationStatus
from auditoria.models.base import Base, TimeStampedModel, UUIDModel
from auditoria.schemas.authorization import (
    Authorization,
    AuthorizationConsumption,
    AuthorizedService,
)


class AuthorizationRecord(Base, UUIDModel, TimeStampedModel):
    """Payer-issued authorization."""

    __tablename__ = "authorizations"

    number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    patient_document: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    patient_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    payer_nit: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    principal_diagnosis: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    secondary_diagnoses: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    status: Mapped[AuthorizationStatus] = mapped_column(
        Enum(AuthorizationStatus),
        default=AuthorizationStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    void_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    services: Mapped[list["AuthorizationServiceRecord"]] = relationship(
        back_populates="authorization",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    consumptions: Mapped[list["AuthorizationConsumptionRecord"]] = relationship(
        back_populates="authorization",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @classmethod
    def from_schema(cls, authorization: Authorization) -> "AuthorizationRecord":
        return cls(
            id=authorization.id,
            number=authorization.number,
            patient_document=authorization.patient_document,
            patient_name=authorization.patient_name,
            payer_nit=authorization.payer_nit,
            principal_diagnosis=authorization.principal_diagnosis,
            secondary_diagnoses=list(authorization.secondary_diagnoses),
            status=authorization.status,
            issue_date=authorization.issue_date,
            expiry_date=authorization.expiry_date,
            used_at=authorization.used_at,
            void_reason=authorization.void_reason,
            services=[
                AuthorizationServiceRecord(
                    procedure_code=s.procedure_code,
                    description=s.description,
                    quantity=s.quantity,
                    quantity_used=s.quantity_used,
                    authorized_value=s.authorized_value,
                )
                for s in authorization.services
            ],
            consumptions=[
                AuthorizationConsumptionRecord(
                    radicado_id=c.radicado_id,
                    line_number=c.line_number,
                    procedure_code=c.procedure_code,
                    quantity=c.quantity,
                    consumed_at=c.consumed_at,
                )
                for c in authorization.consumptions
            ],
        )

    def to_schema(self) -> Authorization:
        return Authorization(
            id=self.id,
            number=self.number,
            patient_document=self.patient_document,
            patient_name=self.patient_name,
            payer_nit=self.payer_nit,
            principal_diagnosis=self.principal_diagnosis,
            secondary_diagnoses=list(self.secondary_diagnoses or []),
            services=[
                AuthorizedService(
                    procedure_code=s.procedure_code,
                    description=s.description,
                    quantity=s.quantity,
                    quantity_used=s.quantity_used,
                    authorized_value=s.authorized_value,
                )
                for s in self.services
            ],
            status=self.status,
            issue_date=self.issue_date,
            expiry_date=self.expiry_date,
            used_at=self.used_at,
            void_reason=self.void_reason,
            consumptions=[
                AuthorizationConsumption(
                    radicado_id=c.radicado_id,
                    line_number=c.line_number,
                    procedure_code=c.procedure_code,
                    quantity=c.quantity,
                    consumed_at=c.consumed_at,
                )
                for c in self.consumptions
            ],
            created_at=self.created_at,
        )


class AuthorizationServiceRecord(Base, UUIDModel):
    """Authorized procedure with its quantity budget."""

    __tablename__ = "authorization_services"
    __table_args__ = (
        CheckConstraint("quantity_used <= quantity", name="quantity_budget"),
        CheckConstraint("quantity_used >= 0", name="quantity_used_positive"),
        UniqueConstraint("authorization_id", "procedure_code"),
    )

    authorization_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("authorizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    procedure_code: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    authorized_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(16, 2), nullable=True)

    authorization: Mapped[AuthorizationRecord] = relationship(back_populates="services")


class AuthorizationConsumptionRecord(Base, UUIDModel):
    """Units held by one radicado line item."""

    __tablename__ = "authorization_consumptions"
    __table_args__ = (
        UniqueConstraint("authorization_id", "radicado_id", "line_number"),
    )

    authorization_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("authorizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    radicado_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    procedure_code: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    consumed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    authorization: Mapped[AuthorizationRecord] = relationship(back_populates="consumptions")
