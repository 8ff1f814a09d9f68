"""
=============================================================================
CUEMATCH - Liquidación y Auditoría del Ledger
=============================================================================
Cálculo de comisión/premio y verificación de la ecuación de balance por
partida:

    pot total = entry_fee * 2 = premio + comisión

La comisión se extrae del pot; nunca se crea ni se destruye dinero.
=============================================================================
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable

from .models import MatchStatus, SIGNED_DIRECTION, Transaction, TransactionType

CENTS = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Convierte a Decimal con 2 decimales (half-up)."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class SettlementTerms:
    """Términos financieros de una partida de dos jugadores."""
    entry_fee: Decimal
    total_wager: Decimal
    commission: Decimal
    payout: Decimal
    commission_rate: Decimal

    def validate_balance_equation(self) -> bool:
        """Pot = Premio + Comisión."""
        return self.total_wager == self.payout + self.commission


class SettlementCalculator:
    """
    Calculadora de comisión (rake) sobre el pot total.

    Ejemplo mesa 100 (10%):
        - pot total: 200.00
        - comisión: 20.00
        - premio ganador: 180.00
    """

    PLAYERS_PER_MATCH = 2

    def __init__(self, commission_rate: Decimal):
        commission_rate = Decimal(str(commission_rate))
        if not Decimal("0") <= commission_rate < Decimal("1"):
            raise ValueError(f"Invalid commission rate: {commission_rate}")
        self.commission_rate = commission_rate

    def calculate(self, entry_fee: Any) -> SettlementTerms:
        entry_fee = to_money(entry_fee)
        if entry_fee < 0:
            raise ValueError("entry_fee must be non-negative")

        total_wager = entry_fee * self.PLAYERS_PER_MATCH
        commission = (total_wager * self.commission_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
        payout = total_wager - commission

        terms = SettlementTerms(
            entry_fee=entry_fee,
            total_wager=total_wager,
            commission=commission,
            payout=payout,
            commission_rate=self.commission_rate,
        )
        if not terms.validate_balance_equation():
            raise ValueError(f"Balance equation failed for entry fee {entry_fee}")
        return terms

    def breakdown(self, entry_fee: Any) -> str:
        """Resumen legible para logs."""
        terms = self.calculate(entry_fee)
        return (
            f"Mesa {terms.entry_fee} | Comisión {terms.commission_rate * 100}% | "
            f"Pot {terms.total_wager} | Fee {terms.commission} | Premio {terms.payout}"
        )


def audit_match_entries(match_status: MatchStatus, entry_fee: Any,
                        entries: Iterable[Transaction]) -> Dict[str, Any]:
    """
    Verifica la integridad del Ledger de una partida contra su pot.

    - Partida finalizada: premio + comisión == entry_fee * 2
    - Partida cancelada: devoluciones == entry_fee * 2
    - Partida activa: todavía no hay asientos de liquidación
    """
    total_wager = to_money(entry_fee) * 2
    totals = {kind: Decimal("0.00") for kind in TransactionType}
    net_user_delta = Decimal("0.00")
    count = 0

    for entry in entries:
        kind = TransactionType(entry.transaction_type)
        totals[kind] += entry.amount
        net_user_delta += entry.amount * SIGNED_DIRECTION[kind]
        count += 1

    settled = totals[TransactionType.PAYOUT] + totals[TransactionType.FEE]
    refunds = totals[TransactionType.REFUND]
    match_status = MatchStatus(match_status)

    if match_status.is_terminal:
        # Un cierre terminal reparte el pot exactamente una vez
        drift = total_wager - settled - refunds
    else:
        drift = settled + refunds

    return {
        "status": match_status.value,
        "entry_fee": str(to_money(entry_fee)),
        "total_wager": str(total_wager),
        "entries": count,
        "payout": str(totals[TransactionType.PAYOUT]),
        "commission": str(totals[TransactionType.FEE]),
        "refunds": str(refunds),
        "net_user_delta": str(net_user_delta),
        "drift": str(drift),
        "integrity_status": "OK" if drift == 0 else "ALERT",
    }
