"""
SQLAlchemy Repositories.

Live-mode persistence over PostgreSQL. Each call opens its own session from
the injected session maker and commits before returning.

Optimistic concurrency and authorization budgets are enforced in SQL:
- radicados: UPDATE ... WHERE version = :expected
- authorization services: UPDATE ... WHERE quantity_used + :delta <= quantity
"""

from datetime import date, datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditoria.core.enums import (
    AuthorizationStatus,
    IncomeCategory,
    RadicadoStatus,
    Regimen,
    RuleType,
    ServiceType,
    TariffSchedule,
)
from auditoria.models.authorization import (
    AuthorizationConsumptionRecord,
    AuthorizationRecord,
    AuthorizationServiceRecord,
)
from auditoria.models.radicado import RadicadoRecord
from auditoria.models.reference import (
    ClinicalCompatibilityRecord,
    ContractRecord,
    HabilitationRecordRow,
    ModeratingFeeRecord,
    TariffCatalogRecord,
)
from auditoria.models.rule import (
    RuleApplicationPassRecord,
    RuleApplicationRecord,
    RuleRecord,
)
from auditoria.repositories.base import (
    AuthorizationRepository,
    RadicadoRepository,
    ReferenceDataRepository,
    RuleRepository,
)
from auditoria.schemas.authorization import Authorization, AuthorizationConsumption
from auditoria.schemas.radicado import Radicado
from auditoria.schemas.reference import (
    ClinicalCompatibility,
    Contract,
    HabilitationRecord,
    ModeratingFeeRow,
    TariffCatalogEntry,
)
from auditoria.schemas.rule import Rule, RuleApplication, RuleUsageStats
from auditoria.services.authorization_ledger import derive_usage_status
from auditoria.utils.errors import (
    AuthorizationConsumptionError,
    AuthorizationNotFoundError,
    ConcurrencyConflictError,
    DuplicateRecordError,
)


class SqlReferenceDataRepository(ReferenceDataRepository):
    """Reference data tables."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get_tariff(
        self, code: str, schedule: TariffSchedule = TariffSchedule.ISS_2004
    ) -> Optional[TariffCatalogEntry]:
        async with self._session_maker() as session:
            record = await session.get(TariffCatalogRecord, (schedule, code))
            return record.to_schema() if record else None

    async def list_contracts(self, payer_nit: str) -> list[Contract]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(ContractRecord).where(ContractRecord.payer_nit == payer_nit)
            )
            return [r.to_schema() for r in result.scalars()]

    async def list_moderating_fees(
        self,
        regimen: Regimen,
        category: IncomeCategory,
        service_type: ServiceType,
    ) -> list[ModeratingFeeRow]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(ModeratingFeeRecord).where(
                    ModeratingFeeRecord.regimen == regimen,
                    ModeratingFeeRecord.category == category,
                    ModeratingFeeRecord.service_type == service_type,
                )
            )
            return [r.to_schema() for r in result.scalars()]

    async def list_habilitations(self, provider_nit: str) -> list[HabilitationRecord]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(HabilitationRecordRow).where(
                    HabilitationRecordRow.provider_nit == provider_nit
                )
            )
            return [r.to_schema() for r in result.scalars()]

    async def list_clinical_compatibility(self) -> list[ClinicalCompatibility]:
        async with self._session_maker() as session:
            result = await session.execute(select(ClinicalCompatibilityRecord))
            return [r.to_schema() for r in result.scalars()]


class SqlRadicadoRepository(RadicadoRepository):
    """Radicados table with version-checked updates."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def add(self, radicado: Radicado) -> Radicado:
        async with self._session_maker() as session:
            session.add(RadicadoRecord.from_schema(radicado))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateRecordError("Radicado", radicado.number) from e
        return radicado

    async def get(self, radicado_id: UUID) -> Optional[Radicado]:
        async with self._session_maker() as session:
            record = await session.get(RadicadoRecord, radicado_id)
            return record.to_schema() if record else None

    async def get_by_number(self, number: str) -> Optional[Radicado]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(RadicadoRecord).where(RadicadoRecord.number == number)
            )
            record = result.scalar_one_or_none()
            return record.to_schema() if record else None

    async def save(self, radicado: Radicado, expected_version: int) -> Radicado:
        now = datetime.now(timezone.utc)
        async with self._session_maker() as session:
            result = await session.execute(
                update(RadicadoRecord)
                .where(
                    RadicadoRecord.id == radicado.id,
                    RadicadoRecord.version == expected_version,
                )
                .values(
                    status=radicado.status,
                    billed_total=radicado.billed_total,
                    pass_number=radicado.pass_number,
                    version=expected_version + 1,
                    document=RadicadoRecord.document_from_schema(radicado),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                actual = await session.scalar(
                    select(RadicadoRecord.version).where(RadicadoRecord.id == radicado.id)
                )
                raise ConcurrencyConflictError(str(radicado.id), expected_version, actual)
            await session.commit()
        return radicado.model_copy(update={"version": expected_version + 1, "updated_at": now})

    async def list_radicados(
        self,
        status: Optional[RadicadoStatus] = None,
        offset: int = 0,
        limit: int = 100,
    ) -> list[Radicado]:
        query = select(RadicadoRecord).order_by(RadicadoRecord.created_at)
        if status is not None:
            query = query.where(RadicadoRecord.status == status)
        async with self._session_maker() as session:
            result = await session.execute(query.offset(offset).limit(limit))
            return [r.to_schema() for r in result.scalars()]


class SqlAuthorizationRepository(AuthorizationRepository):
    """Authorizations with atomic per-service consumption."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @staticmethod
    async def _load(session: AsyncSession, number: str) -> Optional[AuthorizationRecord]:
        result = await session.execute(
            select(AuthorizationRecord)
            .where(AuthorizationRecord.number == number)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, authorization: Authorization) -> Authorization:
        async with self._session_maker() as session:
            session.add(AuthorizationRecord.from_schema(authorization))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateRecordError("Authorization", authorization.number) from e
        return authorization

    async def get_by_number(self, number: str) -> Optional[Authorization]:
        async with self._session_maker() as session:
            record = await self._load(session, number)
            return record.to_schema() if record else None

    async def save(self, authorization: Authorization) -> Authorization:
        async with self._session_maker() as session:
            record = await self._load(session, authorization.number)
            if record is None:
                raise AuthorizationNotFoundError(authorization.number)
            record.status = authorization.status
            record.void_reason = authorization.void_reason
            record.used_at = authorization.used_at
            record.patient_name = authorization.patient_name
            await session.commit()
            return record.to_schema()

    async def consume(
        self,
        number: str,
        procedure_code: str,
        radicado_id: UUID,
        line_number: int,
        quantity: int,
    ) -> Authorization:
        now = datetime.now(timezone.utc)
        async with self._session_maker() as session:
            record = await self._load(session, number)
            if record is None:
                raise AuthorizationNotFoundError(number)
            service = next(
                (s for s in record.services if s.procedure_code == procedure_code), None
            )
            if service is None:
                raise AuthorizationConsumptionError(number, procedure_code, 0, quantity)

            previous = next(
                (
                    c
                    for c in record.consumptions
                    if c.radicado_id == radicado_id and c.line_number == line_number
                ),
                None,
            )
            previous_quantity = previous.quantity if previous else 0
            delta = quantity - previous_quantity

            result = await session.execute(
                update(AuthorizationServiceRecord)
                .where(
                    AuthorizationServiceRecord.id == service.id,
                    AuthorizationServiceRecord.quantity_used + delta
                    <= AuthorizationServiceRecord.quantity,
                    AuthorizationServiceRecord.quantity_used + delta >= 0,
                )
                .values(quantity_used=AuthorizationServiceRecord.quantity_used + delta)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                current = await session.scalar(
                    select(
                        AuthorizationServiceRecord.quantity
                        - AuthorizationServiceRecord.quantity_used
                    ).where(AuthorizationServiceRecord.id == service.id)
                )
                raise AuthorizationConsumptionError(
                    number, procedure_code, int(current or 0) + previous_quantity, quantity
                )

            if previous is not None and quantity == 0:
                await session.delete(previous)
            elif previous is not None:
                previous.quantity = quantity
                previous.consumed_at = now
            elif quantity > 0:
                session.add(
                    AuthorizationConsumptionRecord(
                        authorization_id=record.id,
                        radicado_id=radicado_id,
                        line_number=line_number,
                        procedure_code=procedure_code,
                        quantity=quantity,
                        consumed_at=now,
                    )
                )
            await session.flush()

            record = await self._load(session, number)
            snapshot = record.to_schema()
            record.status = derive_usage_status(snapshot)
            if quantity > 0:
                record.used_at = now
            await session.commit()
            return snapshot.model_copy(
                update={"status": record.status, "used_at": record.used_at}
            )

    async def list_consumptions(
        self, radicado_id: UUID
    ) -> list[tuple[str, AuthorizationConsumption]]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(AuthorizationRecord.number, AuthorizationConsumptionRecord)
                .join(
                    AuthorizationConsumptionRecord,
                    AuthorizationConsumptionRecord.authorization_id == AuthorizationRecord.id,
                )
                .where(AuthorizationConsumptionRecord.radicado_id == radicado_id)
            )
            return [
                (
                    number,
                    AuthorizationConsumption(
                        radicado_id=c.radicado_id,
                        line_number=c.line_number,
                        procedure_code=c.procedure_code,
                        quantity=c.quantity,
                        consumed_at=c.consumed_at,
                    ),
                )
                for number, c in result.all()
            ]

    async def list_expiring(self, as_of: date) -> list[Authorization]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(AuthorizationRecord).where(
                    AuthorizationRecord.status == AuthorizationStatus.ACTIVE,
                    AuthorizationRecord.expiry_date < as_of,
                )
            )
            return [r.to_schema() for r in result.scalars()]


class SqlRuleRepository(RuleRepository):
    """Rules table plus the application log."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def add(self, rule: Rule) -> Rule:
        async with self._session_maker() as session:
            sequence = (
                await session.scalar(select(func.coalesce(func.max(RuleRecord.sequence), 0)))
            ) + 1
            record = RuleRecord.from_schema(rule, sequence)
            session.add(record)
            await session.commit()
            return rule.model_copy(update={"sequence": sequence})

    async def get(self, rule_id: UUID) -> Optional[Rule]:
        async with self._session_maker() as session:
            record = await session.get(RuleRecord, rule_id)
            return record.to_schema() if record else None

    async def save(self, rule: Rule) -> Rule:
        async with self._session_maker() as session:
            record = await session.get(RuleRecord, rule.id)
            if record is None:
                record = RuleRecord.from_schema(rule, rule.sequence)
                session.add(record)
            else:
                record.apply_schema(rule)
            await session.commit()
        return rule

    async def delete(self, rule_id: UUID) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(delete(RuleRecord).where(RuleRecord.id == rule_id))
            await session.commit()
            return result.rowcount > 0

    async def list_rules(
        self,
        active_only: bool = False,
        rule_type: Optional[RuleType] = None,
    ) -> list[Rule]:
        query = select(RuleRecord).order_by(RuleRecord.priority, RuleRecord.sequence)
        if active_only:
            query = query.where(RuleRecord.active.is_(True))
        if rule_type is not None:
            query = query.where(RuleRecord.rule_type == rule_type)
        async with self._session_maker() as session:
            result = await session.execute(query)
            return [r.to_schema() for r in result.scalars()]

    async def record_pass(
        self,
        radicado_id: UUID,
        pass_id: UUID,
        applications: list[RuleApplication],
    ) -> None:
        now = datetime.now(timezone.utc)
        async with self._session_maker() as session:
            session.add_all(RuleApplicationRecord.from_schema(a) for a in applications)
            await session.execute(
                pg_insert(RuleApplicationPassRecord)
                .values(radicado_id=radicado_id, pass_id=pass_id, recorded_at=now)
                .on_conflict_do_update(
                    index_elements=[RuleApplicationPassRecord.radicado_id],
                    set_={"pass_id": pass_id, "recorded_at": now},
                )
            )
            await session.commit()

    async def usage_stats(self) -> dict[UUID, RuleUsageStats]:
        query = (
            select(
                RuleApplicationRecord.rule_id,
                func.count(RuleApplicationRecord.id),
                func.coalesce(func.sum(RuleApplicationRecord.amount_affected), 0),
                func.coalesce(func.sum(RuleApplicationRecord.glosas_avoided), 0),
                func.max(RuleApplicationRecord.applied_at),
            )
            .join(
                RuleApplicationPassRecord,
                (RuleApplicationPassRecord.radicado_id == RuleApplicationRecord.radicado_id)
                & (RuleApplicationPassRecord.pass_id == RuleApplicationRecord.pass_id),
            )
            .group_by(RuleApplicationRecord.rule_id)
        )
        async with self._session_maker() as session:
            result = await session.execute(query)
            return {
                rule_id: RuleUsageStats(
                    times_applied=count,
                    amount_affected=amount,
                    glosas_avoided=int(avoided),
                    last_applied_at=last,
                )
                for rule_id, count, amount, avoided, last in result.all()
            }

    async def list_applications(self, rule_id: UUID) -> list[RuleApplication]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(RuleApplicationRecord)
                .where(RuleApplicationRecord.rule_id == rule_id)
                .order_by(RuleApplicationRecord.applied_at)
            )
            return [r.to_schema() for r in result.scalars()]
