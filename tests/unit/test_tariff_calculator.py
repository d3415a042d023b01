"""
Unit tests for the tariff and copay calculator.
"""

from datetime import date
from decimal import Decimal

import pytest

from auditoria.core.enums import (
    Exemption,
    IncomeCategory,
    Regimen,
    ServiceType,
    TariffSchedule,
)
from auditoria.db import seeds
from auditoria.schemas.radicado import PatientProfile
from auditoria.schemas.reference import (
    CategoryMultiplier,
    Contract,
    ModeratingFeeRow,
    PactedTariff,
    TariffCatalogEntry,
)
from auditoria.services.tariff_calculator import (
    TariffCalculator,
    copay,
    expected_value,
    moderating_fee,
    money,
    resolve_contract,
    variance,
)
from auditoria.utils.errors import ReferenceDataMissingError

SERVICE_DATE = date(2024, 6, 10)


@pytest.fixture
def contract() -> Contract:
    return seeds.contracts()[0]


@pytest.fixture
def catalog() -> dict[str, TariffCatalogEntry]:
    return {entry.code: entry for entry in seeds.tariff_catalog()}


@pytest.fixture
def calculator(reference_repository) -> TariffCalculator:
    return TariffCalculator(reference_repository)


class TestExpectedValue:
    """Tests for expected value precedence."""

    def test_category_multiplier(self, contract, catalog):
        """Test consultation priced at 45,000 x 1.15."""
        quote = expected_value(catalog["890201"], contract, SERVICE_DATE)
        assert quote.expected_value == Decimal("51750.00")
        assert quote.basis == "category"
        assert quote.factor == Decimal("1.15")

    def test_pacted_value_wins(self, contract, catalog):
        """Test pacted value overrides the Cirugía multiplier."""
        quote = expected_value(catalog["513100"], contract, SERVICE_DATE)
        assert quote.expected_value == Decimal("2600000.00")
        assert quote.basis == "pacted"

    def test_category_over_global(self, contract, catalog):
        """Test Cirugía multiplier 1.20 applies to an unpacted surgery."""
        quote = expected_value(catalog["470101"], contract, SERVICE_DATE)
        assert quote.expected_value == Decimal("2220000.00")
        assert quote.basis == "category"

    def test_global_factor(self, contract, catalog):
        """Test categories without a multiplier use the global factor."""
        quote = expected_value(catalog["871121"], contract, SERVICE_DATE)
        assert quote.expected_value == Decimal("74750.00")
        assert quote.basis == "global"

    def test_expired_pacted_value_ignored(self, contract, catalog):
        """Test a pacted value outside its window falls back to the category."""
        contract.pacted_tariffs = [
            PactedTariff(
                procedure_code="513100",
                value=Decimal("2600000"),
                valid_to=date(2023, 12, 31),
            )
        ]
        quote = expected_value(catalog["513100"], contract, SERVICE_DATE)
        assert quote.basis == "category"
        assert quote.expected_value == Decimal("2940000.00")

    def test_category_match_ignores_accents_and_case(self, contract, catalog):
        """Test 'CIRUGIA' matches the 'Cirugía' category."""
        contract.category_multipliers = [
            CategoryMultiplier(category="CIRUGIA", multiplier=Decimal("1.30"))
        ]
        quote = expected_value(catalog["470101"], contract, SERVICE_DATE)
        assert quote.expected_value == Decimal("2405000.00")

    def test_no_contract_uses_default_factor(self, catalog):
        """Test the reference value times the default factor without a contract."""
        quote = expected_value(catalog["890201"], None, SERVICE_DATE, Decimal("1.0"))
        assert quote.expected_value == Decimal("45000.00")
        assert quote.basis == "default"
        assert quote.contract_id is None


class TestVariance:
    """Tests for relative variance."""

    def test_overbilled_consultation(self):
        """Test 54,000 billed against 51,750 is about 4.3%."""
        result = variance(Decimal("54000"), Decimal("51750"))
        assert round(result * 100, 1) == Decimal("4.3")

    def test_underbilled_is_negative(self):
        """Test billing below the pacted value gives a negative variance."""
        assert variance(Decimal("45000"), Decimal("50000")) == Decimal("-0.1")

    def test_zero_expected(self):
        """Test a zero expected value does not divide by zero."""
        assert variance(Decimal("0"), Decimal("0")) == 0
        assert variance(Decimal("10"), Decimal("0")) == 1


class TestContractResolution:
    """Tests for contract selection."""

    def test_payer_wide_contract(self, contract):
        """Test the payer-wide contract applies to any provider."""
        found = resolve_contract([contract], seeds.NUEVA_EPS_NIT, "999", SERVICE_DATE)
        assert found is contract

    def test_provider_scoped_wins(self, contract):
        """Test a provider-specific contract beats the payer default."""
        scoped = contract.model_copy(
            update={"name": "Convenio Clínica Demo", "provider_nit": seeds.DEMO_PROVIDER_NIT}
        )
        found = resolve_contract(
            [contract, scoped], seeds.NUEVA_EPS_NIT, seeds.DEMO_PROVIDER_NIT, SERVICE_DATE
        )
        assert found.name == "Convenio Clínica Demo"

    def test_outside_window(self, contract):
        """Test a service before the contract start finds nothing."""
        assert resolve_contract([contract], seeds.NUEVA_EPS_NIT, None, date(2023, 6, 1)) is None

    def test_inactive_contract(self, contract):
        """Test inactive contracts are skipped."""
        contract.active = False
        assert resolve_contract([contract], seeds.NUEVA_EPS_NIT, None, SERVICE_DATE) is None


class TestModeratingFee:
    """Tests for the cuota moderadora."""

    def test_fixed_value(self):
        """Test a fixed value row."""
        row = ModeratingFeeRow(
            regimen=Regimen.CONTRIBUTIVO,
            category=IncomeCategory.B,
            service_type=ServiceType.GENERAL_CONSULTATION,
            fixed_value=Decimal("18000"),
        )
        assert moderating_fee(row, None, Decimal("1300000")) == Decimal("18000.00")

    def test_percentage_of_minimum_wage_with_cap(self):
        """Test 3.6% of the minimum wage is capped."""
        row = ModeratingFeeRow(
            regimen=Regimen.CONTRIBUTIVO,
            category=IncomeCategory.C,
            service_type=ServiceType.GENERAL_CONSULTATION,
            percentage=Decimal("3.6"),
            cap=Decimal("47300"),
        )
        # 1,300,000 x 3.6% = 46,800 (below cap)
        assert moderating_fee(row, None, Decimal("1300000")) == Decimal("46800.00")
        assert moderating_fee(row, None, Decimal("1400000")) == Decimal("47300.00")

    def test_exemption_all(self):
        """Test subsidized category B with exemption 'Todos' pays nothing."""
        row = seeds.moderating_fees()[0]
        assert Exemption.ALL in row.exemptions
        assert moderating_fee(row, None, Decimal("1300000")) == Decimal("0")

    def test_pregnant_exemption(self, patient):
        """Test a pregnant patient is exempt."""
        row = seeds.moderating_fees()[1]
        pregnant = patient.model_copy(update={"pregnant": True})
        assert moderating_fee(row, pregnant, Decimal("1300000")) == Decimal("0")
        assert moderating_fee(row, patient, Decimal("1300000")) == Decimal("4500.00")

    def test_under_one_year(self):
        """Test infants are exempt."""
        row = seeds.moderating_fees()[1]
        infant = PatientProfile(document_number="1", age_years=0)
        assert moderating_fee(row, infant, Decimal("1300000")) == Decimal("0")


class TestCopay:
    """Tests for the copago."""

    def test_percentage(self, contract):
        """Test 20% copay for contributivo A."""
        result = copay(contract, Regimen.CONTRIBUTIVO, IncomeCategory.A, Decimal("54000"))
        assert result == Decimal("10800.00")

    def test_cap(self, contract):
        """Test the copay never exceeds the row cap."""
        result = copay(contract, Regimen.CONTRIBUTIVO, IncomeCategory.A, Decimal("9000000"))
        assert result == Decimal("1200000.00")

    def test_no_row(self, contract):
        """Test regimens without a row pay no copay."""
        result = copay(contract, Regimen.SUBSIDIADO, IncomeCategory.A, Decimal("54000"))
        assert result == Decimal("0")

    def test_no_contract(self):
        """Test no contract means no copay."""
        assert copay(None, Regimen.CONTRIBUTIVO, IncomeCategory.A, Decimal("54000")) == 0


class TestTariffCalculator:
    """Tests for the repository-backed calculator."""

    @pytest.mark.asyncio
    async def test_quote(self, calculator):
        """Test quoting a consultation for the demo payer."""
        quote = await calculator.quote(
            "890201", seeds.NUEVA_EPS_NIT, seeds.DEMO_PROVIDER_NIT, SERVICE_DATE
        )
        assert quote.expected_value == Decimal("51750.00")

    @pytest.mark.asyncio
    async def test_unknown_procedure(self, calculator):
        """Test an unknown procedure raises ReferenceDataMissingError."""
        with pytest.raises(ReferenceDataMissingError) as exc_info:
            await calculator.quote("999999", seeds.NUEVA_EPS_NIT, None, SERVICE_DATE)
        assert exc_info.value.key == f"{TariffSchedule.ISS_2004.value}:999999"

    @pytest.mark.asyncio
    async def test_explicit_zero_default_factor(self, reference_repository):
        """Test a zero default factor is honored, not replaced by the setting."""
        calculator = TariffCalculator(reference_repository, default_factor=Decimal("0"))
        quote = await calculator.quote("890201", "800000001", None, SERVICE_DATE)
        assert quote.basis == "default"
        assert quote.factor == Decimal("0")
        assert quote.expected_value == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_moderating_fee_contract_row(self, calculator, contract, patient):
        """Test contract fee rows take precedence."""
        fee = await calculator.moderating_fee(
            Regimen.CONTRIBUTIVO,
            IncomeCategory.A,
            ServiceType.GENERAL_CONSULTATION,
            patient,
            contract,
        )
        assert fee == Decimal("4500.00")

    @pytest.mark.asyncio
    async def test_moderating_fee_standalone_schedule(self, calculator):
        """Test subsidized B falls back to the standalone schedule and is exempt."""
        fee = await calculator.moderating_fee(
            Regimen.SUBSIDIADO,
            IncomeCategory.B,
            ServiceType.GENERAL_CONSULTATION,
            None,
        )
        assert fee == Decimal("0")

    @pytest.mark.asyncio
    async def test_moderating_fee_missing(self, calculator):
        """Test a missing fee row raises ReferenceDataMissingError."""
        with pytest.raises(ReferenceDataMissingError):
            await calculator.moderating_fee(
                Regimen.SUBSIDIADO,
                IncomeCategory.C,
                ServiceType.HOSPITALIZATION,
                None,
            )


class TestMoney:
    """Tests for COP rounding."""

    def test_half_up(self):
        """Test amounts round half up to cents."""
        assert money(Decimal("10.005")) == Decimal("10.01")
        assert money(Decimal("10.004")) == Decimal("10.00")
