"""
Risk profile (trading mode) definitions.

Each profile sets when the trailing stop arms, how much open profit it may
give back, the fallback stop/target used when a position has none, and how
long a losing position may stagnate before it is cut.
"""

from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class RiskProfile:
    name: str
    trailing_start_pct: float     # trailing stop arms once high-water P&L% exceeds this
    trailing_giveback_pct: float  # points of P&L% the trail may give back
    stop_loss_pct: float          # fallback when a position carries no stop
    take_profit_pct: float        # fallback when a position carries no target
    timeout_hours: float          # stagnant losers are cut after this long


RISK_PROFILES: Dict[str, RiskProfile] = {
    "conservative": RiskProfile("conservative", 10.0, 2.0, 3.0, 15.0, 72),
    "balanced": RiskProfile("balanced", 5.0, 2.0, 5.0, 20.0, 48),
    "trader": RiskProfile("trader", 3.5, 2.0, 6.0, 25.0, 24),
    "aggressive": RiskProfile("aggressive", 2.5, 2.0, 8.0, 35.0, 12),
    "scalper": RiskProfile("scalper", 1.5, 0.7, 3.0, 7.0, 4),
}

DEFAULT_PROFILE = "balanced"


def get_risk_profile(name: str) -> RiskProfile:
    """Look up a profile by name, falling back to the balanced profile."""
    return RISK_PROFILES.get((name or "").lower(), RISK_PROFILES[DEFAULT_PROFILE])
