"""
Reference Data Tables.

Tariff catalog, contracts, moderating fee schedule, habilitations and the
clinical compatibility table. Contract sub-tables (pacted values, multipliers,
copay and fee rows) are small and always read together, so they are JSONB.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Date, Enum, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from auditoria.core.enums import (
    ContractType,
    IncomeCategory,
    Regimen,
    ServiceType,
    TariffSchedule,
)
from auditoria.models.base import Base, TimeStampedModel, UUIDModel
from auditoria.schemas.reference import (
    ClinicalCompatibility,
    Contract,
    HabilitationRecord,
    ModeratingFeeRow,
    TariffCatalogEntry,
)


class TariffCatalogRecord(Base):
    """Reference tariff (e.g. ISS-2004) for a procedure code."""

    __tablename__ = "tariff_catalog"

    schedule: Mapped[TariffSchedule] = mapped_column(Enum(TariffSchedule), primary_key=True)
    code: Mapped[str] = mapped_column(String(20), primary_key=True)
    description: Mapped[str] = mapped_column(String(300), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    value: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False)
    requires_authorization: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    service_type: Mapped[Optional[ServiceType]] = mapped_column(Enum(ServiceType), nullable=True)

    def to_schema(self) -> TariffCatalogEntry:
        return TariffCatalogEntry.model_validate(self)

    @classmethod
    def from_schema(cls, entry: TariffCatalogEntry) -> "TariffCatalogRecord":
        return cls(**entry.model_dump())


class ContractRecord(Base, UUIDModel, TimeStampedModel):
    """Payer-provider contract (convenio)."""

    __tablename__ = "contracts"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    payer_nit: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    payer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    provider_nit: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        index=True,
        comment="NULL means payer-wide default contract",
    )
    contract_type: Mapped[ContractType] = mapped_column(Enum(ContractType), nullable=False)
    tariff_schedule: Mapped[TariffSchedule] = mapped_column(Enum(TariffSchedule), nullable=False)
    global_factor: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    pacted_tariffs: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    category_multipliers: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    copays: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    moderating_fees: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def to_schema(self) -> Contract:
        return Contract.model_validate(
            {
                "id": self.id,
                "name": self.name,
                "payer_nit": self.payer_nit,
                "payer_name": self.payer_name,
                "provider_nit": self.provider_nit,
                "contract_type": self.contract_type,
                "tariff_schedule": self.tariff_schedule,
                "global_factor": self.global_factor,
                "pacted_tariffs": self.pacted_tariffs or [],
                "category_multipliers": self.category_multipliers or [],
                "copays": self.copays or [],
                "moderating_fees": self.moderating_fees or [],
                "start_date": self.start_date,
                "end_date": self.end_date,
                "active": self.active,
                "created_at": self.created_at,
            }
        )

    @classmethod
    def from_schema(cls, contract: Contract) -> "ContractRecord":
        data = contract.model_dump(mode="json")
        return cls(
            id=contract.id,
            name=contract.name,
            payer_nit=contract.payer_nit,
            payer_name=contract.payer_name,
            provider_nit=contract.provider_nit,
            contract_type=contract.contract_type,
            tariff_schedule=contract.tariff_schedule,
            global_factor=contract.global_factor,
            pacted_tariffs=data["pacted_tariffs"],
            category_multipliers=data["category_multipliers"],
            copays=data["copays"],
            moderating_fees=data["moderating_fees"],
            start_date=contract.start_date,
            end_date=contract.end_date,
            active=contract.active,
        )


class ModeratingFeeRecord(Base, UUIDModel):
    """Standalone moderating fee schedule row (cuota moderadora)."""

    __tablename__ = "moderating_fees"

    regimen: Mapped[Regimen] = mapped_column(Enum(Regimen), nullable=False)
    category: Mapped[IncomeCategory] = mapped_column(Enum(IncomeCategory), nullable=False)
    service_type: Mapped[ServiceType] = mapped_column(Enum(ServiceType), nullable=False)
    fixed_value: Mapped[Decimal] = mapped_column(Numeric(16, 2), default=0, nullable=False)
    percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 3), nullable=True)
    cap: Mapped[Optional[Decimal]] = mapped_column(Numeric(16, 2), nullable=True)
    minimum_wage: Mapped[Optional[Decimal]] = mapped_column(Numeric(16, 2), nullable=True)
    exemptions: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def to_schema(self) -> ModeratingFeeRow:
        return ModeratingFeeRow.model_validate(self)

    @classmethod
    def from_schema(cls, row: ModeratingFeeRow) -> "ModeratingFeeRecord":
        data = row.model_dump()
        data["exemptions"] = [exemption.value for exemption in row.exemptions]
        return cls(**data)


class HabilitationRecordRow(Base, UUIDModel):
    """Provider habilitation for a service category."""

    __tablename__ = "habilitations"

    provider_nit: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    service_category: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def to_schema(self) -> HabilitationRecord:
        return HabilitationRecord.model_validate(self)

    @classmethod
    def from_schema(cls, record: HabilitationRecord) -> "HabilitationRecordRow":
        return cls(**record.model_dump())


class ClinicalCompatibilityRecord(Base, UUIDModel):
    """Diagnoses that justify a procedure or procedure category."""

    __tablename__ = "clinical_compatibility"

    procedure_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    procedure_category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    allowed_diagnosis_prefixes: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    excluded_diagnosis_prefixes: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def to_schema(self) -> ClinicalCompatibility:
        return ClinicalCompatibility.model_validate(self)

    @classmethod
    def from_schema(cls, entry: ClinicalCompatibility) -> "ClinicalCompatibilityRecord":
        return cls(**entry.model_dump())
