"""
Unit tests for influence weight decay.
"""

import math
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from decay import (
    DECAY_PRESETS,
    SECONDS_PER_DAY,
    apply_decay,
    calculate_half_life,
    decay_stats,
    filter_effective,
    lambda_from_half_life,
    resolve_lambda,
    with_decay,
)
from models import InfluenceEdge

NOW = 1_700_000_000.0


def make_edge(source, target, weight, age_days):
    return InfluenceEdge(
        source_note_id=source,
        target_note_id=target,
        weight=weight,
        cosine_sim=weight,
        drift_score=1.0,
        created_at=NOW - age_days * SECONDS_PER_DAY,
    )


class TestDecayFunctions:
    def test_zero_days_is_identity(self):
        assert apply_decay(0.8, 0, 0.05) == 0.8

    def test_negative_days_is_identity(self):
        assert apply_decay(0.8, -3, 0.05) == 0.8

    def test_zero_lambda_is_identity(self):
        assert apply_decay(0.8, 100, 0) == 0.8

    def test_one_half_life_halves_weight(self):
        lam = 0.02
        half_life = calculate_half_life(lam)
        assert apply_decay(1.0, half_life, lam) == pytest.approx(0.5)

    def test_half_life_of_balanced_preset(self):
        assert calculate_half_life(DECAY_PRESETS["balanced"]) == pytest.approx(34.66, abs=0.01)

    def test_half_life_without_decay_is_infinite(self):
        assert math.isinf(calculate_half_life(0))

    def test_lambda_and_half_life_are_inverse(self):
        assert lambda_from_half_life(calculate_half_life(0.05)) == pytest.approx(0.05)

    def test_resolve_lambda_accepts_presets_and_numbers(self):
        assert resolve_lambda("fast") == DECAY_PRESETS["fast"]
        assert resolve_lambda(" Slow ") == DECAY_PRESETS["slow"]
        assert resolve_lambda("0.03") == pytest.approx(0.03)
        assert resolve_lambda(None) == DECAY_PRESETS["balanced"]

    def test_resolve_lambda_rejects_negative(self):
        with pytest.raises(ValueError):
            resolve_lambda(-0.1)


class TestDecoratedEdges:
    def test_with_decay_fills_display_fields(self):
        edge = make_edge("a", "b", 0.5, age_days=10)
        [decorated] = with_decay([edge], 0.02, now=NOW)

        assert decorated.days_since_creation == 10.0
        assert decorated.decay_factor == pytest.approx(math.exp(-0.2), abs=1e-4)
        assert decorated.decayed_weight == pytest.approx(0.5 * math.exp(-0.2), abs=1e-4)
        assert decorated.weight == 0.5

    def test_filter_effective_drops_weak_edges_and_sorts(self):
        edges = with_decay(
            [
                make_edge("a", "x", 0.2, age_days=0),
                make_edge("b", "x", 0.9, age_days=0),
                make_edge("c", "x", 0.9, age_days=365),
            ],
            0.02,
            now=NOW,
        )
        kept = filter_effective(edges, 0.05)

        assert [e.source_note_id for e in kept] == ["b", "a"]

    def test_decay_stats_empty(self):
        stats = decay_stats([], 0.02, now=NOW)

        assert stats["total_edges"] == 0
        assert stats["avg_decay_factor"] == 1.0
        assert stats["decay_impact"] == 0.0

    def test_decay_stats_summarises_ages(self):
        edges = [make_edge("a", "b", 0.4, 0), make_edge("c", "b", 0.6, 20)]
        stats = decay_stats(edges, 0.02, now=NOW)

        assert stats["total_edges"] == 2
        assert stats["avg_original_weight"] == pytest.approx(0.5)
        assert stats["oldest_edge_days"] == 20.0
        assert stats["newest_edge_days"] == 0.0
        assert stats["effective_edges"] == 2
        assert 0 < stats["decay_impact"] < 1
