"""
Liquidation Aggregator.
Source: liquidation stage of the radicado audit pipeline

Summarizes the final glosas of a pass into a Liquidation:
    accepted_value = sum of billed values of line items without glosas
    glosa_total    = sum of glosa amounts
    final_payable  = billed_total - glosa_total, floored at 0
"""

from collections import Counter, OrderedDict
from decimal import Decimal
from typing import Iterable, Optional

from auditoria.schemas.radicado import AppliedRule, Glosa, Liquidation, Radicado
from auditoria.services.tariff_calculator import money


def _cop(value: Decimal) -> str:
    return f"${value:,.0f}".replace(",", ".")


class LiquidationAggregator:
    """Builds the Liquidation record of a pass."""

    def aggregate(
        self,
        radicado: Radicado,
        glosas: list[Glosa],
        applied_rules: Iterable[AppliedRule] = (),
        moderating_fee: Optional[Decimal] = None,
        copay: Optional[Decimal] = None,
        observations: Iterable[str] = (),
        pass_number: int = 0,
        liquidated_by: Optional[str] = None,
    ) -> Liquidation:
        objected_lines = {g.line_number for g in glosas if g.line_number is not None}
        accepted_value = sum(
            (item.billed_value for item in radicado.line_items if item.line_number not in objected_lines),
            Decimal("0"),
        )
        glosa_total = sum((g.amount for g in glosas), Decimal("0"))
        final_payable = max(radicado.billed_total - glosa_total, Decimal("0"))

        notes = self.summarize(glosas, list(applied_rules))
        notes.extend(observations)

        return Liquidation(
            billed_total=money(radicado.billed_total),
            accepted_value=money(accepted_value),
            glosa_total=money(glosa_total),
            final_payable=money(final_payable),
            moderating_fee=money(moderating_fee) if moderating_fee is not None else None,
            copay=money(copay) if copay is not None else None,
            observations=notes,
            pass_number=pass_number,
            liquidated_by=liquidated_by,
        )

    @staticmethod
    def summarize(glosas: list[Glosa], applied_rules: list[AppliedRule]) -> list[str]:
        """Human-readable lines naming the glosa codes and rules behind the result."""
        notes: list[str] = []

        if glosas:
            total = sum((g.amount for g in glosas), Decimal("0"))
            by_code = Counter(g.code for g in glosas)
            codes = ", ".join(f"{code} ({count})" for code, count in sorted(by_code.items()))
            notes.append(f"Se generaron {len(glosas)} glosa(s) por {_cop(total)}: códigos {codes}")
        else:
            notes.append("Sin glosas: se acepta el valor total facturado")

        per_rule: "OrderedDict[str, list[AppliedRule]]" = OrderedDict()
        for applied in applied_rules:
            per_rule.setdefault(applied.rule_name, []).append(applied)
        for name, entries in per_rule.items():
            affected = sum((a.amount_affected for a in entries), Decimal("0"))
            notes.append(
                f"Regla '{name}' aplicada {len(entries)} vez/veces "
                f"(valor afectado {_cop(affected)})"
            )

        return notes
