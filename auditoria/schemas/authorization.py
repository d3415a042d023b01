"""
Pydantic Schemas for Payer Authorizations.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from auditoria.core.enums import AuthorizationStatus


class AuthorizedService(BaseModel):
    """One authorized procedure with its quantity budget."""

    model_config = ConfigDict(from_attributes=True)

    procedure_code: str
    description: Optional[str] = None
    quantity: int = Field(..., ge=1)
    quantity_used: int = Field(default=0, ge=0)
    authorized_value: Optional[Decimal] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_budget(self) -> "AuthorizedService":
        if self.quantity_used > self.quantity:
            raise ValueError(
                f"quantity_used ({self.quantity_used}) exceeds quantity ({self.quantity})"
            )
        return self

    @property
    def available(self) -> int:
        return self.quantity - self.quantity_used


class AuthorizationConsumption(BaseModel):
    """Quantity consumed by one radicado line item."""

    radicado_id: UUID
    line_number: int
    procedure_code: str
    quantity: int = Field(..., ge=1)
    consumed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Authorization(BaseModel):
    """Payer-issued permission to bill specific procedures for a patient."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    number: str = Field(..., min_length=1)
    patient_document: str
    patient_name: Optional[str] = None
    payer_nit: Optional[str] = None
    principal_diagnosis: Optional[str] = None
    secondary_diagnoses: list[str] = Field(default_factory=list)
    services: list[AuthorizedService] = Field(default_factory=list)
    status: AuthorizationStatus = AuthorizationStatus.ACTIVE
    issue_date: date
    expiry_date: date
    used_at: Optional[datetime] = None
    void_reason: Optional[str] = None
    consumptions: list[AuthorizationConsumption] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def check_window(self) -> "Authorization":
        if self.expiry_date < self.issue_date:
            raise ValueError("expiry_date must not precede issue_date")
        return self

    def service_for(self, procedure_code: str) -> Optional[AuthorizedService]:
        for service in self.services:
            if service.procedure_code == procedure_code:
                return service
        return None


class AuthorizationCheck(BaseModel):
    """Outcome of validate-authorization(number, procedure, quantity)."""

    valid: bool
    message: str
    number: str
    procedure_code: str
    requested: int
    available: Optional[int] = None
    status: Optional[AuthorizationStatus] = None
    expired: bool = False
