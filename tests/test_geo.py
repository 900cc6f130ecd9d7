import math

import pytest

from courier_dispatch.application.visibility_gate import reveal_delay
from courier_dispatch.domain.geo import distance_km
from courier_dispatch.domain.models import Location


def test_distance_same_point_is_zero() -> None:
    assert distance_km((52.52, 13.405), (52.52, 13.405)) == 0


def test_distance_berlin_to_paris() -> None:
    d = distance_km((52.5200, 13.4050), (48.8566, 2.3522))
    assert d == pytest.approx(878, rel=0.01)


def test_distance_accepts_locations() -> None:
    a = Location(latitude=0.0, longitude=0.0)
    b = Location(latitude=0.0, longitude=1.0)
    assert distance_km(a, b) == pytest.approx(111.19, rel=0.001)


def test_distance_antipodal_points_do_not_blow_up() -> None:
    d = distance_km((0.0, 0.0), (0.0, 180.0))
    assert d == pytest.approx(math.pi * 6371.0, rel=1e-6)


@pytest.mark.parametrize(
    "a, b",
    [
        (None, (1.0, 1.0)),
        ((1.0, 1.0), Location()),
        ((float("nan"), 1.0), (1.0, 1.0)),
        ((1.0, float("inf")), (1.0, 1.0)),
        (("north", 1.0), (1.0, 1.0)),
    ],
)
def test_distance_unknown_coordinates(a, b) -> None:
    assert distance_km(a, b) is None


@pytest.mark.parametrize(
    "distance, expected",
    [
        (0, 1),
        (0.05, 1),
        (0.1, 1),
        (0.5, 10),
        (1.0, 10),
        (1.5, 15),
        (3.5, 35),
        (10.0, 100),
    ],
)
def test_reveal_delay_tiers(distance, expected) -> None:
    assert reveal_delay(distance) == expected


@pytest.mark.parametrize("distance", [None, float("nan"), -1.0])
def test_reveal_delay_unknown_distance(distance) -> None:
    assert reveal_delay(distance) == 60
    assert reveal_delay(distance, unknown_delay=90) == 90


def test_reveal_delay_is_monotonic() -> None:
    distances = [i / 20 for i in range(0, 200)]
    delays = [reveal_delay(d) for d in distances]
    assert delays == sorted(delays)
