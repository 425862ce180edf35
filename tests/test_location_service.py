from __future__ import annotations

import math
import unittest

from attendtrack.services.location import EARTH_RADIUS_M, check_geofence, distance_m


def _north_of(lat: float, meters: float) -> float:
    return lat + math.degrees(meters / EARTH_RADIUS_M)


class LocationServiceTests(unittest.TestCase):
    def test_distance_m_zero_for_same_point(self) -> None:
        value = distance_m(41.0, 29.0, 41.0, 29.0)
        self.assertAlmostEqual(value, 0.0, places=6)

    def test_distance_m_is_symmetric(self) -> None:
        v1 = distance_m(41.0082, 28.9784, 39.9334, 32.8597)
        v2 = distance_m(39.9334, 32.8597, 41.0082, 28.9784)
        self.assertAlmostEqual(v1, v2, places=6)

    def test_thousandth_of_a_degree_latitude_near_equator(self) -> None:
        value = distance_m(0.0, 0.0, 0.001, 0.0)
        self.assertAlmostEqual(value, 111.0, delta=111.0 * 0.05)

    def test_distance_m_known_reference(self) -> None:
        # Approximate distance for 1 degree longitude on equator.
        value = distance_m(0.0, 0.0, 0.0, 1.0)
        self.assertAlmostEqual(value, 111_195, delta=300)

    def test_antipodal_points_do_not_overflow(self) -> None:
        value = distance_m(0.0, 0.0, 0.0, 180.0)
        self.assertAlmostEqual(value, math.pi * EARTH_RADIUS_M, delta=1.0)

    def test_geofence_uses_unrounded_distance(self) -> None:
        check = check_geofence(
            anchor_lat=41.0,
            anchor_lon=29.0,
            lat=_north_of(41.0, 50.4),
            lon=29.0,
            radius_m=50,
        )
        self.assertFalse(check.within)
        self.assertEqual(check.to_details(), {"distance": 50, "allowedRadius": 50})

    def test_geofence_boundary_is_inclusive(self) -> None:
        check = check_geofence(anchor_lat=41.0, anchor_lon=29.0, lat=41.0, lon=29.0, radius_m=0)
        self.assertTrue(check.within)


if __name__ == "__main__":
    unittest.main()
