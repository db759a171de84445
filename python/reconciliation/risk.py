"""
Risk scoring for card updates and vault records
"""

from typing import Optional

from config_manager import RiskConfig
from .records import CardUpdateRecord, ValidationResult


def clamp_score(score: int) -> int:
    """Bound a risk score to the 0-100 range"""
    return max(0, min(100, int(score)))


def score_card_update(
    record: CardUpdateRecord,
    validation: Optional[ValidationResult] = None,
    config: Optional[RiskConfig] = None
) -> int:
    """Score a card update from its fraud score and distinct risk flags

    When ``validation`` is given the score is also stored on it.
    """
    cfg = config or RiskConfig()
    flags = {str(flag) for flag in record.risk_indicators.risk_flags if flag}
    score = clamp_score(record.risk_indicators.fraud_score + cfg.flag_weight * len(flags))
    if validation is not None:
        validation.risk_score = score
    return score


def is_high_risk(score: int, config: Optional[RiskConfig] = None) -> bool:
    cfg = config or RiskConfig()
    return score > cfg.high_risk_threshold
