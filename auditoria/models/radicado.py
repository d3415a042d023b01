"""
Radicado Table.

Scalar columns carry what is filtered or indexed; the nested pipeline output
(line items, validations, glosas, liquidation, history) is stored as a JSONB
document validated back into the pydantic schema on load.
"""

from decimal import Decimal
from typing import Any

from sqlalchemy import Enum, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from auditoria.core.enums import RadicadoStatus
from auditoria.models.base import Base, TimeStampedModel, UUIDModel
from auditoria.schemas.radicado import Radicado

# Columns stored outside the JSON document
_SCALAR_FIELDS = {"id", "number", "status", "version", "pass_number", "created_at", "updated_at"}


class RadicadoRecord(Base, UUIDModel, TimeStampedModel):
    """Persisted radicado with an optimistic version counter."""

    __tablename__ = "radicados"

    number: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        comment="Claim number assigned at intake",
    )
    provider_nit: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    payer_nit: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[RadicadoStatus] = mapped_column(
        Enum(RadicadoStatus),
        default=RadicadoStatus.PENDING,
        nullable=False,
        index=True,
    )
    billed_total: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False)
    pass_number: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
        comment="Optimistic concurrency counter",
    )
    document: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        comment="Radicado body: patient, lines, validations, glosas, liquidation",
    )

    @classmethod
    def document_from_schema(cls, radicado: Radicado) -> dict[str, Any]:
        return radicado.model_dump(mode="json", exclude=_SCALAR_FIELDS)

    @classmethod
    def from_schema(cls, radicado: Radicado) -> "RadicadoRecord":
        return cls(
            id=radicado.id,
            number=radicado.number,
            provider_nit=radicado.provider_nit,
            payer_nit=radicado.payer_nit,
            invoice_number=radicado.invoice_number,
            status=radicado.status,
            billed_total=radicado.billed_total,
            pass_number=radicado.pass_number,
            version=radicado.version,
            document=cls.document_from_schema(radicado),
        )

    def to_schema(self) -> Radicado:
        return Radicado.model_validate(
            {
                **self.document,
                "id": self.id,
                "number": self.number,
                "status": self.status,
                "version": self.version,
                "pass_number": self.pass_number,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )
