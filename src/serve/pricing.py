from __future__ import annotations
from typing import Optional, Dict, Any, List

from src.processing.config import PricingPolicy
from src.serve.schemas import (
    EventSeverity, InsuranceRiskAssessment, RiskFactorType, TripScore,
)
from src.serve.score_helpers import interp_anchors, risk_score_from_overall


def premium_from_risk(
    *,
    risk_score: float,
    policy: PricingPolicy,
    discount_pct: float = 0.0,
    prior_premium: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Simple premium builder:
      1) multiplier = interp(risk_score, policy.multiplier_anchors)
      2) raw premium p_raw = base_premium * multiplier * (1 - discount_pct/100)
      3) optional caps around prior_premium: [prior*(1-max_change), prior*(1+max_change)]
      4) floor at min_premium
    """
    multiplier = interp_anchors(float(risk_score), policy.multiplier_anchors)

    # 1-2) Indicated premium before caps/floor
    p_raw = float(policy.base_premium) * multiplier * (1.0 - float(discount_pct) / 100.0)

    # 3) Caps around prior ± max_change (if prior provided)
    prior = float(prior_premium) if prior_premium is not None else None
    cap_lower = cap_upper = None
    if prior is not None:
        cap_lower = prior * (1.0 - float(policy.max_change))
        cap_upper = prior * (1.0 + float(policy.max_change))
        p_capped = min(max(p_raw, cap_lower), cap_upper)
    else:
        p_capped = p_raw

    # 4) Minimum premium floor
    premium_out = max(p_capped, float(policy.min_premium))

    # Explainability: which constraint bit?
    cap_reason = (
        "upper" if (cap_upper is not None and abs(p_capped - cap_upper) < 1e-9 and p_raw > cap_upper)
        else "lower" if (cap_lower is not None and abs(p_capped - cap_lower) < 1e-9 and p_raw < cap_lower)
        else "floor" if (premium_out > p_capped)
        else None
    )

    return {
        "premium": float(round(premium_out, 2)),
        "raw_premium": float(round(p_raw, 2)),   # before caps/floor
        "multiplier": float(round(multiplier, 4)),
        "cap_reason": cap_reason,                # 'upper' | 'lower' | 'floor' | None
        "bounds": {
            "min_premium": float(policy.min_premium),
            "cap_lower": float(cap_lower) if cap_lower is not None else None,
            "cap_upper": float(cap_upper) if cap_upper is not None else None,
        },
        "inputs": {
            "risk_score": float(risk_score),
            "base_premium": float(policy.base_premium),
            "discount_pct": float(discount_pct),
            "prior_premium": float(prior) if prior is not None else None,
            "max_change": float(policy.max_change),
        },
    }


def discount_for(overall: float, policy: PricingPolicy) -> float:
    for cut, pct in policy.discount_tiers:
        if overall >= cut:
            return float(pct)
    return 0.0


def _recommendations(ts: TripScore) -> List[str]:
    recs: List[str] = []
    kinds = {f.kind for f in ts.risk_factors}
    if ts.safety_score < 70:
        recs.append("Ease into braking and acceleration to lift the safety score.")
    if RiskFactorType.SPEEDING in kinds or ts.legal_compliance_score < 70:
        recs.append("Keep to posted speed limits.")
    if RiskFactorType.PHONE_USAGE in kinds or RiskFactorType.DISTRACTED_DRIVING in kinds:
        recs.append("Avoid handling the phone while the vehicle is moving.")
    if ts.statistics.night_driving_pct > 20:
        recs.append("Shift trips away from late-night hours where possible.")
    if RiskFactorType.FATIGUE_INDICATORS in kinds:
        recs.append("Take a break at least every two hours of driving.")
    return recs


def estimate_insurance_risk(
    trip_score: TripScore,
    policy: Optional[PricingPolicy] = None,
    *,
    prior_premium: Optional[float] = None,
) -> InsuranceRiskAssessment:
    """
    Price one scored trip. Discount eligibility: overall score at or above
    policy.discount_threshold and no critical event at all (advisory included).
    """
    policy = policy or PricingPolicy()
    risk = risk_score_from_overall(trip_score.overall_score)
    has_critical = any(e.severity == EventSeverity.CRITICAL for e in trip_score.events)
    eligible = trip_score.overall_score >= policy.discount_threshold and not has_critical
    pct = discount_for(trip_score.overall_score, policy) if eligible else 0.0

    priced = premium_from_risk(
        risk_score=risk, policy=policy, discount_pct=pct, prior_premium=prior_premium,
    )
    return InsuranceRiskAssessment(
        risk_score=round(risk, 2),
        base_premium=float(policy.base_premium),
        risk_multiplier=priced["multiplier"],
        estimated_premium=priced["premium"],
        discount_eligible=eligible,
        discount_pct=pct,
        cap_reason=priced["cap_reason"],
        recommendations=_recommendations(trip_score),
    )
