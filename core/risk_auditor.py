"""
Basic Risk Auditor

Default entry gate for autopilot buys. Rules are evaluated in order and the
first blocking rule wins:

1. Max open trades
2. One position per symbol, unless the add qualifies for pyramiding
3. Max positions sharing a symbol prefix
4. Some cash must be available
5. Size at max_position_percent of equity (half for a pyramid add), capped by cash
6. Minimum quantity
"""

import logging
from typing import Sequence

from core.interfaces import RiskAuditor
from core.models import AuditResult, Decision, Position, Verdict

logger = logging.getLogger(__name__)

PYRAMID_MIN_PNL_PCT = 2.5
PYRAMID_MIN_SCORE = 70.0
PYRAMID_SIZE_FACTOR = 0.5
PREFIX_LENGTH = 2
MIN_QUANTITY = 1e-6


class BasicRiskAuditor(RiskAuditor):
    """Stateless apart from the operator-tunable limits."""

    def __init__(
        self,
        max_position_percent: float = 10.0,
        max_open_trades: int = 50,
        max_per_prefix: int = 10,
        commission_rate: float = 0.001,
    ):
        self.max_position_percent = max_position_percent
        self.max_open_trades = max_open_trades
        self.max_per_prefix = max_per_prefix
        self.commission_rate = commission_rate

    def update_limits(self, max_position_percent: float, max_open_trades: int) -> None:
        self.max_position_percent = max_position_percent
        self.max_open_trades = max_open_trades

    def audit(
        self,
        decision: Decision,
        positions: Sequence[Position],
        cash: float,
        equity: float,
        price: float,
    ) -> AuditResult:
        if decision.verdict != Verdict.BUY:
            return AuditResult(approved=True, adjusted_quantity=0.0, reason="exits are not audited")

        open_positions = [p for p in positions if p.is_open]
        if len(open_positions) >= self.max_open_trades:
            logger.info("Blocked %s: max open trades (%d/%d)", decision.symbol, len(open_positions), self.max_open_trades)
            return AuditResult(False, 0.0, f"max open trades reached ({self.max_open_trades})")

        pyramiding = False
        existing = next((p for p in open_positions if p.symbol == decision.symbol), None)
        if existing is not None:
            pnl_pct = existing.pnl_percent(price)
            eligible = (
                pnl_pct > PYRAMID_MIN_PNL_PCT
                and decision.score > PYRAMID_MIN_SCORE
                and not existing.is_pyramided
            )
            if not eligible:
                return AuditResult(False, 0.0, f"{decision.symbol} already held")
            pyramiding = True
            logger.info("Pyramid add approved for %s (+%.2f%%, score %.1f)", decision.symbol, pnl_pct, decision.score)
        else:
            prefix = decision.symbol[:PREFIX_LENGTH]
            same_prefix = sum(1 for p in open_positions if p.symbol.startswith(prefix))
            if same_prefix >= self.max_per_prefix:
                return AuditResult(False, 0.0, f"too many {prefix}* positions ({same_prefix})")

        if price <= 0 or cash <= 0:
            return AuditResult(False, 0.0, "insufficient cash")

        budget = equity * self.max_position_percent / 100.0
        if pyramiding:
            budget *= PYRAMID_SIZE_FACTOR
        # Leave room for the buy-side commission
        budget = min(budget, cash / (1.0 + self.commission_rate))

        quantity = budget / price
        if quantity < MIN_QUANTITY:
            return AuditResult(False, 0.0, f"quantity {quantity:.8f} below minimum")

        reason = "pyramid add approved" if pyramiding else f"sized at {self.max_position_percent:g}% of equity"
        return AuditResult(True, quantity, reason)
