"""
action_policy.py
----------------
Convierte score + tier + flags activos en una acción que el llamador
aplica: allow | throttle | block.

Orden de evaluación (la primera regla que aplica gana):
  1. Flag sin resolver con severidad en BLOCK_SEVERITIES → block
  2. score < BLOCK_BELOW                                 → block
  3. score >= ALLOW_AT_OR_ABOVE o tier en ALLOW_TIERS    → allow
  4. Resto                                               → throttle

Los umbrales vienen de PolicyConfig (prefijo POLICY_) con valores por
defecto seguros: 40 / 80, tiers gold y platinum, severidad high.
"""

import logging
from collections.abc import Iterable
from typing import Optional

from motor_confianza.core.config import PolicyConfig
from motor_confianza.domain.schemas import (
    Action,
    PolicyDecision,
    RiskFlag,
    TrustTier,
)

logger = logging.getLogger(__name__)


class ActionPolicy:

    def __init__(self, config: Optional[PolicyConfig] = None) -> None:
        self.config = config or PolicyConfig()

    def decide(
        self,
        score:        float,
        tier:         str | TrustTier,
        active_flags: Iterable[RiskFlag] = (),
    ) -> PolicyDecision:
        cfg = self.config
        tier_value = TrustTier(tier).value

        blocking = [
            f for f in active_flags
            if not f.is_resolved and f.severity.value in cfg.BLOCK_SEVERITIES
        ]
        if blocking:
            reasons = [f"flag_{f.severity.value}:{f.reason}" for f in blocking]
            return self._decision(Action.BLOCK, reasons, score, tier_value)

        if score < cfg.BLOCK_BELOW:
            return self._decision(
                Action.BLOCK, [f"score_below_{cfg.BLOCK_BELOW:g}"], score, tier_value
            )

        if score >= cfg.ALLOW_AT_OR_ABOVE:
            return self._decision(
                Action.ALLOW, [f"score_at_or_above_{cfg.ALLOW_AT_OR_ABOVE:g}"],
                score, tier_value,
            )
        if tier_value in cfg.ALLOW_TIERS:
            return self._decision(
                Action.ALLOW, [f"tier_{tier_value}"], score, tier_value
            )

        return self._decision(Action.THROTTLE, ["score_in_review_band"], score, tier_value)

    def _decision(
        self, action: Action, reasons: list[str], score: float, tier: str
    ) -> PolicyDecision:
        log = logger.warning if action == Action.BLOCK else logger.info
        log(
            f"[ActionPolicy] action={action.value} score={score} tier={tier} "
            f"reasons={reasons}"
        )
        return PolicyDecision(action=action, reasons=reasons)
