"""
Unit tests for the LLM rule interpreter.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from auditoria.core.enums import RuleActionKind, RuleType
from auditoria.gateways.base import GatewayError
from auditoria.gateways.llm_gateway import LLMResponse
from auditoria.schemas.rule import RuleInterpretation
from auditoria.services.rule_interpreter import (
    LLMRuleInterpreter,
    build_prompt,
    check_interpretation,
    parse_interpretation,
)
from auditoria.utils.errors import RuleInterpretationError


def llm_response(payload) -> LLMResponse:
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return LLMResponse(content=content, model="claude-test", provider="anthropic")


def mock_gateway(**kwargs) -> MagicMock:
    gateway = MagicMock()
    gateway.complete_json = AsyncMock(**kwargs)
    return gateway


class TestBuildPrompt:
    """Tests for prompt construction."""

    def test_includes_description_and_allowed_actions(self):
        """Test the prompt carries the rule and the actions its type admits."""
        prompt = build_prompt("  No generar glosas menores a $5,000  ", RuleType.VALUE)
        assert 'Regla: "No generar glosas menores a $5,000"' in prompt
        assert "Tipo de regla: value" in prompt
        assert "cap_glosa_amount, suppress_glosa_below, widen_tariff_tolerance" in prompt
        assert "- billed_value" in prompt


class TestParseInterpretation:
    """Tests for validating raw payloads."""

    def test_valid_payload(self, make_interpretation):
        """Test a known action parses into the tagged union."""
        interpretation = parse_interpretation(
            make_interpretation({"kind": "suppress_glosa_below", "threshold": 5000}),
            processed_by="anthropic",
        )
        assert interpretation.action_kind == RuleActionKind.SUPPRESS_GLOSA_BELOW
        assert interpretation.processed_by == "anthropic"

    def test_unknown_action(self, make_interpretation):
        """Test an action outside the closed set is rejected."""
        with pytest.raises(RuleInterpretationError) as exc_info:
            parse_interpretation(make_interpretation({"kind": "delete_everything"}), "llm")
        assert exc_info.value.errors

    def test_unknown_condition_field(self, make_interpretation):
        """Test conditions may only reference known line fields."""
        payload = make_interpretation(
            {"kind": "cap_glosa_amount", "max_amount": 1000},
            conditions=[{"field": "color", "operator": "eq", "value": "rojo"}],
        )
        with pytest.raises(RuleInterpretationError) as exc_info:
            parse_interpretation(payload, "llm")
        assert any("unknown condition field" in error for error in exc_info.value.errors)

    def test_between_requires_max(self, make_interpretation):
        """Test between conditions need both bounds."""
        payload = make_interpretation(
            {"kind": "cap_glosa_amount", "max_amount": 1000},
            conditions=[{"field": "billed_value", "operator": "between", "value": 10}],
        )
        with pytest.raises(RuleInterpretationError):
            parse_interpretation(payload, "llm")


class TestCheckInterpretation:
    """Tests for activation checks."""

    def test_low_confidence(self, make_interpretation):
        """Test interpretations below the floor are flagged."""
        interpretation = RuleInterpretation.model_validate(
            make_interpretation({"kind": "cap_glosa_amount", "max_amount": 1000}, confidence=40)
        )
        errors = check_interpretation(interpretation, RuleType.VALUE, 50.0)
        assert errors == ["Confianza de interpretación 40% inferior al mínimo de 50%"]

    def test_incompatible_type(self, make_interpretation):
        """Test a date rule cannot cap glosas."""
        interpretation = RuleInterpretation.model_validate(
            make_interpretation({"kind": "cap_glosa_amount", "max_amount": 1000})
        )
        errors = check_interpretation(interpretation, RuleType.DATE, 50.0)
        assert errors == ["La acción cap_glosa_amount no es compatible con reglas de tipo date"]

    def test_general_accepts_any_action(self, make_interpretation):
        """Test general rules admit every action kind."""
        interpretation = RuleInterpretation.model_validate(
            make_interpretation({"kind": "require_authorization_for", "procedure_category": "Imagenología"})
        )
        assert check_interpretation(interpretation, RuleType.GENERAL, 50.0) == []


class TestLLMRuleInterpreter:
    """Tests for the gateway-backed interpreter."""

    @pytest.mark.asyncio
    async def test_interpret(self, make_interpretation):
        """Test a gateway JSON answer becomes an interpretation."""
        gateway = mock_gateway(
            return_value=llm_response(
                make_interpretation({"kind": "suppress_glosa_below", "threshold": 5000})
            )
        )
        interpreter = LLMRuleInterpreter(gateway=gateway, timeout_seconds=5)

        result = await interpreter.interpret("No generar glosas menores a $5,000", RuleType.GLOSA)

        assert result.action.threshold == 5000
        assert result.processed_by == "anthropic"
        prompt, system_prompt = gateway.complete_json.call_args.args
        assert "No generar glosas menores a $5,000" in prompt
        assert "JSON" in system_prompt

    @pytest.mark.asyncio
    async def test_fenced_answer(self, make_interpretation):
        """Test markdown-fenced answers are accepted."""
        payload = make_interpretation({"kind": "cap_glosa_amount", "max_amount": 3000})
        gateway = mock_gateway(return_value=llm_response(f"```json\n{json.dumps(payload)}\n```"))
        result = await LLMRuleInterpreter(gateway=gateway, timeout_seconds=5).interpret(
            "Limitar glosas a $3,000", RuleType.VALUE
        )
        assert result.action_kind == RuleActionKind.CAP_GLOSA_AMOUNT

    @pytest.mark.asyncio
    async def test_empty_description(self):
        """Test an empty description is rejected without calling the gateway."""
        gateway = mock_gateway()
        with pytest.raises(RuleInterpretationError):
            await LLMRuleInterpreter(gateway=gateway, timeout_seconds=5).interpret("   ", RuleType.GLOSA)
        gateway.complete_json.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """Test a non-JSON answer raises RuleInterpretationError."""
        gateway = mock_gateway(return_value=llm_response("Lo siento, no entiendo"))
        with pytest.raises(RuleInterpretationError):
            await LLMRuleInterpreter(gateway=gateway, timeout_seconds=5).interpret(
                "Regla", RuleType.GLOSA
            )

    @pytest.mark.asyncio
    async def test_gateway_failure(self):
        """Test gateway errors surface as interpretation errors."""
        gateway = mock_gateway(side_effect=GatewayError("LLM completion failed"))
        with pytest.raises(RuleInterpretationError) as exc_info:
            await LLMRuleInterpreter(gateway=gateway, timeout_seconds=5).interpret(
                "Regla", RuleType.GLOSA
            )
        assert "LLM completion failed" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test a slow gateway is cut off at the configured timeout."""

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        gateway = MagicMock()
        gateway.complete_json = slow
        with pytest.raises(RuleInterpretationError) as exc_info:
            await LLMRuleInterpreter(gateway=gateway, timeout_seconds=0.01).interpret(
                "Regla", RuleType.GLOSA
            )
        assert "tiempo límite" in exc_info.value.message
