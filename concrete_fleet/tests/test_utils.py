from __future__ import annotations

import random

import pytest

from concrete_fleet.utils import jittered_duration, routing_key_matches


@pytest.mark.parametrize(
    "pattern, routing_key, expected",
    [
        ("order.created", "order.created", True),
        ("order.created", "order.cancelled", False),
        ("order.*", "order.created", True),
        ("order.*", "order.status.changed", False),
        ("order.#", "order.status.changed", True),
        ("order.#", "order", True),
        ("#", "truck.idle", True),
        ("truck.*.returntoplant", "truck.3.returntoplant", True),
        ("truck.*.returntoplant", "truck.returntoplant", False),
        ("#.changed", "truck.status.changed", True),
        ("order.status.*", "order.status.intransit", True),
    ],
)
def test_routing_key_matches(pattern: str, routing_key: str, expected: bool) -> None:
    assert routing_key_matches(pattern, routing_key) is expected


def test_jittered_duration_stays_within_band() -> None:
    rng = random.Random(42)
    samples = [jittered_duration(15, 0.2, rng) for _ in range(200)]
    assert all(12 <= sample <= 18 for sample in samples)
    assert len(set(samples)) > 1


def test_jittered_duration_without_jitter_is_exact() -> None:
    assert jittered_duration(10, 0.0) == 10


def test_jittered_duration_of_zero_base_is_zero() -> None:
    assert jittered_duration(0, 0.2) == 0
