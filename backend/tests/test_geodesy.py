import math

import numpy as np

from sightline.geodesy import (
  EARTH_RADIUS_M,
  bearing,
  curvature_drop,
  destination,
  distance,
  fresnel_radius,
  geodesic_distance,
  haversine,
  interpolate,
  interpolate_arrays,
  point_in_polygon,
  polygon_bbox,
  spherical_polygon_area,
)
from sightline.models import GeoPoint


def test_one_degree_of_latitude() -> None:
  d = distance(GeoPoint(0.0, 0.0), GeoPoint(1.0, 0.0))
  assert math.isclose(d, EARTH_RADIUS_M * math.pi / 180.0, rel_tol=1e-9)


def test_haversine_is_vectorized() -> None:
  lats = np.array([0.0, 1.0, 2.0])
  d = haversine(0.0, 0.0, lats, np.zeros(3))
  assert d.shape == (3,)
  assert d[0] == 0.0
  assert math.isclose(d[2], 2 * d[1], rel_tol=1e-9)


def test_cardinal_bearings() -> None:
  origin = GeoPoint(0.0, 0.0)
  assert math.isclose(bearing(origin, GeoPoint(1.0, 0.0)), 0.0, abs_tol=1e-9)
  assert math.isclose(bearing(origin, GeoPoint(0.0, 1.0)), 90.0, abs_tol=1e-9)
  assert math.isclose(bearing(origin, GeoPoint(-1.0, 0.0)), 180.0, abs_tol=1e-9)
  assert math.isclose(bearing(origin, GeoPoint(0.0, -1.0)), 270.0, abs_tol=1e-9)


def test_interpolate_endpoints_are_exact() -> None:
  a = GeoPoint(46.5, 7.25)
  b = GeoPoint(46.9, 8.1)
  assert interpolate(a, b, 0.0) == a
  assert interpolate(a, b, 1.0) == b


def test_interpolate_midpoint_on_equator() -> None:
  mid = interpolate(GeoPoint(0.0, 0.0), GeoPoint(0.0, 10.0), 0.5)
  assert math.isclose(mid.lat, 0.0, abs_tol=1e-9)
  assert math.isclose(mid.lon, 5.0, abs_tol=1e-9)


def test_interpolate_degenerate_arc_returns_start() -> None:
  lat, lon = interpolate_arrays(45.0, 9.0, 45.0, 9.0, np.array([0.0, 0.5, 1.0]))
  assert np.allclose(lat, 45.0)
  assert np.allclose(lon, 9.0)


def test_destination_round_trip() -> None:
  start = GeoPoint(46.0, 8.0)
  end = destination(start, 60.0, 25_000.0)
  assert math.isclose(distance(start, end), 25_000.0, rel_tol=1e-6)
  assert math.isclose(bearing(start, end), 60.0, abs_tol=1e-6)


def test_geodesic_distance_close_to_spherical() -> None:
  a = GeoPoint(46.0, 8.0)
  b = GeoPoint(46.1, 8.1)
  assert math.isclose(geodesic_distance(a, b), distance(a, b), rel_tol=5e-3)


def test_curvature_drop_midpoint() -> None:
  expected = 5000.0 * 5000.0 / (2 * EARTH_RADIUS_M * 4.0 / 3.0)
  assert math.isclose(float(curvature_drop(5000.0, 5000.0)), expected, rel_tol=1e-12)
  assert math.isclose(expected, 1.4715, abs_tol=1e-3)
  assert float(curvature_drop(0.0, 10_000.0)) == 0.0


def test_fresnel_radius_at_2400_mhz() -> None:
  radius = fresnel_radius(5000.0, 5000.0, 2400.0)
  assert math.isclose(radius, 17.67, abs_tol=0.01)
  assert math.isclose(radius * 0.6, 10.6, abs_tol=0.01)


def test_fresnel_radius_zero_at_degenerate_path() -> None:
  assert fresnel_radius(0.0, 0.0, 900.0) == 0.0
  radii = fresnel_radius(np.array([0.0, 100.0]), np.array([0.0, 100.0]), 900.0)
  assert radii[0] == 0.0
  assert radii[1] > 0.0


def test_point_in_polygon_square() -> None:
  square = [GeoPoint(0.0, 0.0), GeoPoint(0.0, 1.0), GeoPoint(1.0, 1.0), GeoPoint(1.0, 0.0)]
  inside = point_in_polygon(np.array([0.5, 1.5, 0.5]), np.array([0.5, 0.5, -0.5]), square)
  assert inside.tolist() == [True, False, False]


def test_spherical_polygon_area_of_small_square() -> None:
  side_deg = 0.01
  square = [
    GeoPoint(0.0, 0.0),
    GeoPoint(0.0, side_deg),
    GeoPoint(side_deg, side_deg),
    GeoPoint(side_deg, 0.0),
  ]
  side_m = EARTH_RADIUS_M * math.radians(side_deg)
  assert math.isclose(spherical_polygon_area(square), side_m * side_m, rel_tol=0.01)
  assert polygon_bbox(square) == (0.0, 0.0, side_deg, side_deg)
