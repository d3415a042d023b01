"""
Unit tests for the authorization ledger.
"""

import asyncio
from datetime import date, timedelta
from uuid import uuid4

import pytest

from auditoria.core.enums import AuthorizationStatus
from auditoria.schemas.authorization import Authorization, AuthorizedService
from auditoria.services.authorization_ledger import (
    apply_consumption,
    available_quantity,
    check_authorization,
    derive_usage_status,
    is_active_as_of,
)
from auditoria.utils.errors import (
    AuthorizationConsumptionError,
    AuthorizationNotFoundError,
    AuthorizationStateError,
)

TODAY = date(2024, 6, 15)


def make_authorization(**overrides) -> Authorization:
    data = {
        "number": "AUT-TEST",
        "patient_document": "1020304050",
        "services": [AuthorizedService(procedure_code="890201", quantity=3)],
        "issue_date": TODAY - timedelta(days=10),
        "expiry_date": TODAY + timedelta(days=10),
    }
    data.update(overrides)
    return Authorization(**data)


class TestCheckAuthorization:
    """Tests for the pure availability check."""

    def test_valid(self):
        """Test requesting within the budget."""
        check = check_authorization(make_authorization(), "AUT-TEST", "890201", 2, TODAY)
        assert check.valid
        assert check.available == 3

    def test_exceeds_quantity(self):
        """Test the exact message when the request exceeds availability."""
        check = check_authorization(make_authorization(), "AUT-TEST", "890201", 4, TODAY)
        assert not check.valid
        assert check.message == "Cantidad excede lo autorizado. Disponible: 3, Solicitado: 4"

    def test_not_found(self):
        """Test a missing authorization."""
        check = check_authorization(None, "AUT-X", "890201", 1, TODAY)
        assert not check.valid
        assert check.message == "Autorización no encontrada"

    def test_expired(self):
        """Test an authorization past its expiry date."""
        check = check_authorization(
            make_authorization(), "AUT-TEST", "890201", 1, TODAY + timedelta(days=11)
        )
        assert not check.valid
        assert check.expired

    def test_not_yet_issued(self):
        """Test an authorization issued in the future is not yet usable."""
        authorization = make_authorization(
            issue_date=TODAY + timedelta(days=2), expiry_date=TODAY + timedelta(days=30)
        )
        check = check_authorization(authorization, "AUT-TEST", "890201", 1, TODAY)
        assert not check.valid
        assert not check.expired
        assert check.message == "Autorización no vigente: expedida el 2024-06-17"
        assert check_authorization(
            authorization, "AUT-TEST", "890201", 1, TODAY + timedelta(days=2)
        ).valid

    def test_voided(self):
        """Test a voided authorization is never valid."""
        authorization = make_authorization(status=AuthorizationStatus.VOIDED)
        check = check_authorization(authorization, "AUT-TEST", "890201", 1, TODAY)
        assert not check.valid
        assert check.message == "Autorización anulada"

    def test_procedure_not_authorized(self):
        """Test a procedure absent from the authorization."""
        check = check_authorization(make_authorization(), "AUT-TEST", "470101", 1, TODAY)
        assert not check.valid
        assert "470101" in check.message

    def test_other_patient(self):
        """Test the authorization must belong to the patient."""
        check = check_authorization(
            make_authorization(), "AUT-TEST", "890201", 1, TODAY, patient_document="999"
        )
        assert not check.valid

    def test_already_requested_reduces_availability(self):
        """Test earlier lines of the same radicado count against the budget."""
        check = check_authorization(
            make_authorization(), "AUT-TEST", "890201", 2, TODAY, already_requested=2
        )
        assert not check.valid
        assert check.available == 1

    def test_own_consumption_counts_as_available(self):
        """Test a re-evaluated radicado sees its own consumption as available."""
        radicado_id = uuid4()
        consumed = apply_consumption(make_authorization(), "890201", radicado_id, 1, 3)
        assert available_quantity(consumed, "890201") == 0
        check = check_authorization(
            consumed, "AUT-TEST", "890201", 3, TODAY, radicado_id=radicado_id
        )
        assert check.valid


class TestActiveAsOf:
    """Tests for validity windows."""

    def test_before_issue(self):
        """Test an authorization is not active before its issue date."""
        assert not is_active_as_of(make_authorization(), TODAY - timedelta(days=11))

    def test_expiry_day_inclusive(self):
        """Test the expiry date itself is still valid."""
        assert is_active_as_of(make_authorization(), TODAY + timedelta(days=10))


class TestApplyConsumption:
    """Tests for consumption bookkeeping."""

    def test_partial_then_used(self):
        """Test usage status moves active -> partially_used -> used."""
        radicado_id = uuid4()
        first = apply_consumption(make_authorization(), "890201", radicado_id, 1, 1)
        assert first.status == AuthorizationStatus.PARTIALLY_USED
        assert first.services[0].quantity_used == 1
        second = apply_consumption(first, "890201", radicado_id, 2, 2)
        assert second.status == AuthorizationStatus.USED
        assert second.used_at is not None

    def test_idempotent_per_line(self):
        """Test re-applying the same line quantity changes nothing."""
        radicado_id = uuid4()
        once = apply_consumption(make_authorization(), "890201", radicado_id, 1, 2)
        twice = apply_consumption(once, "890201", radicado_id, 1, 2)
        assert twice.services[0].quantity_used == 2
        assert len(twice.consumptions) == 1

    def test_exceeding_raises(self):
        """Test consuming beyond the budget raises."""
        with pytest.raises(AuthorizationConsumptionError) as exc_info:
            apply_consumption(make_authorization(), "890201", uuid4(), 1, 4)
        assert exc_info.value.available == 3
        assert exc_info.value.requested == 4

    def test_release_keeps_status_forward(self):
        """Test releasing units never moves a used authorization back."""
        radicado_id = uuid4()
        used = apply_consumption(make_authorization(), "890201", radicado_id, 1, 3)
        released = apply_consumption(used, "890201", radicado_id, 1, 0)
        assert released.services[0].quantity_used == 0
        assert released.consumptions == []
        assert released.status == AuthorizationStatus.USED

    def test_derive_status_leaves_terminal(self):
        """Test expired and voided statuses are not recomputed."""
        authorization = make_authorization(status=AuthorizationStatus.EXPIRED)
        assert derive_usage_status(authorization) == AuthorizationStatus.EXPIRED


class TestAuthorizationLedger:
    """Tests for the ledger service."""

    @pytest.mark.asyncio
    async def test_validate_demo_authorization(self, ledger):
        """Test the demo authorization rejects four consultations."""
        check = await ledger.validate_authorization("AUT20240001", "890201", 4)
        assert not check.valid
        assert check.message == "Cantidad excede lo autorizado. Disponible: 3, Solicitado: 4"

    @pytest.mark.asyncio
    async def test_get_unknown_raises(self, ledger):
        """Test fetching an unknown number raises."""
        with pytest.raises(AuthorizationNotFoundError):
            await ledger.get_authorization_by_number("AUT-NOPE")

    @pytest.mark.asyncio
    async def test_lazy_expiry_on_read(self, ledger):
        """Test reading past expiry persists the expired status."""
        later = TODAY + timedelta(days=200)
        authorization = await ledger.get_authorization_by_number("AUT20240001", as_of=later)
        assert authorization.status == AuthorizationStatus.EXPIRED
        stored = await ledger.peek("AUT20240001")
        assert stored.status == AuthorizationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_read_before_expiry_keeps_status(self, ledger):
        """Test a read inside the window does not change the status."""
        authorization = await ledger.get_authorization_by_number("AUT20240001")
        assert authorization.status == AuthorizationStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_validate_marks_expired(self, ledger):
        """Test validation past expiry reports and persists expiry."""
        check = await ledger.validate_authorization(
            "AUT20240002", "470101", 1, as_of=TODAY + timedelta(days=30)
        )
        assert check.expired
        assert check.status == AuthorizationStatus.EXPIRED
        assert (await ledger.peek("AUT20240002")).status == AuthorizationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_expire_due_sweeps_past_expiry(self, ledger):
        """Test the sweep expires only authorizations past their expiry date."""
        expired = await ledger.expire_due(TODAY + timedelta(days=30))
        assert [a.number for a in expired] == ["AUT20240002"]
        assert (await ledger.peek("AUT20240001")).status == AuthorizationStatus.ACTIVE
        assert await ledger.expire_due(TODAY + timedelta(days=30)) == []

    @pytest.mark.asyncio
    async def test_void(self, ledger):
        """Test voiding records the reason and blocks later use."""
        voided = await ledger.void("AUT20240001", "Duplicada")
        assert voided.status == AuthorizationStatus.VOIDED
        assert voided.void_reason == "Duplicada"
        check = await ledger.validate_authorization("AUT20240001", "890201", 1)
        assert not check.valid

    @pytest.mark.asyncio
    async def test_void_twice_raises(self, ledger):
        """Test a voided authorization cannot be voided again."""
        await ledger.void("AUT20240001", "Duplicada")
        with pytest.raises(AuthorizationStateError):
            await ledger.void("AUT20240001", "Otra vez")

    @pytest.mark.asyncio
    async def test_concurrent_consumption_never_exceeds_quantity(self, ledger):
        """Test racing consumers cannot jointly exceed the authorized quantity."""
        radicados = [uuid4() for _ in range(5)]

        results = await asyncio.gather(
            *(ledger.consume("AUT20240001", "890201", rid, 1, 1) for rid in radicados),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, AuthorizationConsumptionError)]
        assert len(failures) == 2
        stored = await ledger.peek("AUT20240001")
        assert stored.services[0].quantity_used == 3
        assert stored.status == AuthorizationStatus.USED

    @pytest.mark.asyncio
    async def test_sync_releases_and_reassigns(self, ledger):
        """Test sync leaves exactly the desired consumption for a radicado."""
        radicado_id = uuid4()
        await ledger.sync_radicado_consumption(
            radicado_id, {("AUT20240001", 1): ("890201", 2)}
        )
        await ledger.sync_radicado_consumption(
            radicado_id, {("AUT20240001", 2): ("890201", 1)}
        )
        stored = await ledger.peek("AUT20240001")
        assert stored.services[0].quantity_used == 1
        assert [(c.line_number, c.quantity) for c in stored.consumptions] == [(2, 1)]

    @pytest.mark.asyncio
    async def test_sync_reverts_on_failure(self, ledger):
        """Test a failed sync leaves the previous consumption untouched."""
        radicado_id = uuid4()
        await ledger.sync_radicado_consumption(
            radicado_id, {("AUT20240001", 1): ("890201", 1)}
        )
        with pytest.raises(AuthorizationConsumptionError):
            await ledger.sync_radicado_consumption(
                radicado_id,
                {
                    ("AUT20240002", 1): ("902210", 1),
                    ("AUT20240001", 2): ("890201", 5),
                },
            )
        first = await ledger.peek("AUT20240001")
        second = await ledger.peek("AUT20240002")
        assert [(c.line_number, c.quantity) for c in first.consumptions] == [(1, 1)]
        assert second.consumptions == []
