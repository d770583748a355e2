"""Exponential time decay for influence weights.

``decayed = weight * exp(-lambda * days)``. All functions are pure.
"""

from __future__ import annotations

import math
import time
from typing import Dict, Iterable, List, Optional

from models import InfluenceEdge

SECONDS_PER_DAY = 86400.0

DEFAULT_LAMBDA = 0.02
DECAY_PRESETS: Dict[str, float] = {
    "slow": 0.01,
    "balanced": 0.02,
    "fast": 0.05,
}

# Decayed edges below this weight are no longer considered effective.
MIN_EFFECTIVE_WEIGHT = 0.05


def days_since(created_at: float, now: Optional[float] = None) -> float:
    now = time.time() if now is None else now
    return max(0.0, (now - created_at) / SECONDS_PER_DAY)


def decay_factor(days: float, decay_lambda: float = DEFAULT_LAMBDA) -> float:
    if days <= 0 or decay_lambda <= 0:
        return 1.0
    return math.exp(-decay_lambda * days)


def apply_decay(weight: float, days: float, decay_lambda: float = DEFAULT_LAMBDA) -> float:
    """Return ``weight`` decayed by ``days``; identity when days or lambda is non-positive."""
    if days <= 0 or decay_lambda <= 0:
        return weight
    return weight * math.exp(-decay_lambda * days)


def calculate_half_life(decay_lambda: float) -> float:
    if decay_lambda <= 0:
        return math.inf
    return math.log(2) / decay_lambda


def lambda_from_half_life(half_life_days: float) -> float:
    if half_life_days <= 0:
        return math.inf
    return math.log(2) / half_life_days


def resolve_lambda(value) -> float:
    """Accept a preset name or a number."""
    if value is None:
        return DEFAULT_LAMBDA
    if isinstance(value, str):
        preset = DECAY_PRESETS.get(value.strip().lower())
        if preset is not None:
            return preset
        value = float(value)
    if value < 0:
        raise ValueError(f"Decay lambda must be non-negative, got {value}")
    return float(value)


def with_decay(
    edges: Iterable[InfluenceEdge],
    decay_lambda: float = DEFAULT_LAMBDA,
    now: Optional[float] = None,
) -> List[InfluenceEdge]:
    """Annotate edges with decayed weight, age and factor (rounded for display)."""
    now = time.time() if now is None else now
    decorated = []
    for edge in edges:
        days = days_since(edge.created_at, now)
        factor = decay_factor(days, decay_lambda)
        edge.decayed_weight = round(apply_decay(edge.weight, days, decay_lambda), 4)
        edge.days_since_creation = round(days, 2)
        edge.decay_factor = round(factor, 4)
        decorated.append(edge)
    return decorated


def filter_effective(
    edges: Iterable[InfluenceEdge], min_weight: float = MIN_EFFECTIVE_WEIGHT
) -> List[InfluenceEdge]:
    kept = [e for e in edges if (e.decayed_weight or 0.0) >= min_weight]
    kept.sort(key=lambda e: e.decayed_weight or 0.0, reverse=True)
    return kept


def decay_stats(
    edges: List[InfluenceEdge],
    decay_lambda: float = DEFAULT_LAMBDA,
    now: Optional[float] = None,
) -> Dict[str, float]:
    if not edges:
        return {
            "total_edges": 0,
            "avg_original_weight": 0.0,
            "avg_decayed_weight": 0.0,
            "avg_decay_factor": 1.0,
            "avg_age_days": 0.0,
            "oldest_edge_days": 0.0,
            "newest_edge_days": 0.0,
            "effective_edges": 0,
            "decay_impact": 0.0,
        }

    now = time.time() if now is None else now
    ages = [days_since(e.created_at, now) for e in edges]
    factors = [decay_factor(days, decay_lambda) for days in ages]
    decayed = [e.weight * f for e, f in zip(edges, factors)]
    total = len(edges)
    avg_factor = sum(factors) / total

    return {
        "total_edges": total,
        "avg_original_weight": round(sum(e.weight for e in edges) / total, 4),
        "avg_decayed_weight": round(sum(decayed) / total, 4),
        "avg_decay_factor": round(avg_factor, 4),
        "avg_age_days": round(sum(ages) / total, 2),
        "oldest_edge_days": round(max(ages), 2),
        "newest_edge_days": round(min(ages), 2),
        "effective_edges": sum(1 for w in decayed if w >= MIN_EFFECTIVE_WEIGHT),
        "decay_impact": round(1 - avg_factor, 4),
    }
