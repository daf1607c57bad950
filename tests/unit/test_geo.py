"""
Unit tests for the great-circle helpers.
"""
import pytest

from ridematch.services.geo import (
    bearing_deg,
    compass_direction,
    estimate_eta_minutes,
    eta_whole_minutes,
    format_distance,
    haversine_km,
    haversine_m,
)


class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_km(12.9716, 77.5946, 12.9716, 77.5946) == 0.0

    def test_one_degree_of_latitude(self):
        assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.195, rel=1e-4)

    def test_symmetric(self):
        a = haversine_km(12.9716, 77.5946, 13.0827, 80.2707)
        b = haversine_km(13.0827, 80.2707, 12.9716, 77.5946)
        assert a == pytest.approx(b)

    def test_bengaluru_to_chennai(self):
        assert haversine_km(12.9716, 77.5946, 13.0827, 80.2707) == pytest.approx(290, abs=5)

    def test_meters_variant(self):
        assert haversine_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(111195, rel=1e-4)


class TestBearing:
    def test_due_north(self):
        assert bearing_deg(12.0, 77.0, 13.0, 77.0) == pytest.approx(0.0, abs=1e-6)

    def test_due_east_on_equator(self):
        assert bearing_deg(0.0, 0.0, 0.0, 1.0) == pytest.approx(90.0)

    def test_due_south(self):
        assert bearing_deg(13.0, 77.0, 12.0, 77.0) == pytest.approx(180.0)

    @pytest.mark.parametrize("bearing,expected", [(0, "N"), (44, "NE"), (90, "E"), (200, "S"), (350, "N"), (300, "NW")])
    def test_compass(self, bearing, expected):
        assert compass_direction(bearing) == expected


class TestEta:
    def test_minutes_at_average_speed(self):
        assert estimate_eta_minutes(15.0, 30.0) == pytest.approx(30.0)

    def test_whole_minutes_round_up(self):
        assert eta_whole_minutes(0.4, 30.0) == 1
        assert eta_whole_minutes(1.1, 30.0) == 3

    def test_zero_speed_rejected(self):
        with pytest.raises(ValueError):
            estimate_eta_minutes(5.0, 0)


class TestFormatDistance:
    def test_meters_below_one_km(self):
        assert format_distance(450.4) == "450 m"

    def test_kilometres_above(self):
        assert format_distance(1234) == "1.2 km"
