# src/serve/score_helpers.py
from __future__ import annotations
from typing import Iterable, Sequence, Tuple
import numpy as np

from src.serve.schemas import RiskCategory

# Piecewise anchors: (overall driving score -> risk score)
# Higher driving score means lower risk:
#   100 -> 0, 85 -> 25, 70 -> 50, 50 -> 75, 0 -> 100
_RISK_ANCHORS: Tuple[Tuple[float, float], ...] = (
    (0.0, 100.0),
    (50.0, 75.0),
    (70.0, 50.0),
    (85.0, 25.0),
    (100.0, 0.0),
)

# (min overall score, category), first match wins
_CATEGORY_CUTS: Tuple[Tuple[float, RiskCategory], ...] = (
    (90.0, RiskCategory.VERY_LOW),
    (80.0, RiskCategory.LOW),
    (70.0, RiskCategory.MODERATE),
    (60.0, RiskCategory.HIGH),
)


def interp_anchors(x: float, anchors: Sequence[Tuple[float, float]]) -> float:
    xs = np.array([a[0] for a in anchors], dtype=float)
    ys = np.array([a[1] for a in anchors], dtype=float)
    x = float(max(xs.min(), min(xs.max(), x)))  # clamp to [min,max]
    return float(np.interp(x, xs, ys))


def risk_score_from_overall(overall: float) -> float:
    score = interp_anchors(overall, _RISK_ANCHORS)
    return float(max(0.0, min(100.0, score)))


def risk_category(overall: float) -> RiskCategory:
    for cut, cat in _CATEGORY_CUTS:
        if overall >= cut:
            return cat
    return RiskCategory.VERY_HIGH


def exposure_weighted_avg(pairs: Iterable[Tuple[float, float]]) -> float:
    """pairs = [(score, exposure_km), ...]"""
    num = 0.0
    den = 0.0
    for s, w in pairs:
        num += float(s) * float(max(w, 0.0))
        den += float(max(w, 0.0))
    return float(num / den) if den > 0 else 0.0
