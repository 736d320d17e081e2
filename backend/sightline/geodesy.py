from __future__ import annotations

import math
from typing import Sequence

import numpy as np
from pyproj import Geod

from sightline.models import GeoPoint, normalize_lon

EARTH_RADIUS_M = 6_371_000.0
SPEED_OF_LIGHT_M_S = 299_792_458.0
STANDARD_K_FACTOR = 4.0 / 3.0
METERS_PER_DEGREE = 111_000.0
MAX_MERCATOR_LAT = 85.05
DEGENERATE_ARC_RAD = 1e-10

GEOD = Geod(ellps="WGS84")


def haversine(lat1, lon1, lat2, lon2):
  """Great-circle distance in meters. Accepts scalars or numpy arrays."""
  phi1 = np.radians(lat1)
  phi2 = np.radians(lat2)
  d_phi = phi2 - phi1
  d_lam = np.radians(np.subtract(lon2, lon1))
  a = np.sin(d_phi / 2.0) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(d_lam / 2.0) ** 2
  a = np.clip(a, 0.0, 1.0)
  return EARTH_RADIUS_M * 2.0 * np.arctan2(np.sqrt(a), np.sqrt(1.0 - a))


def initial_bearing(lat1, lon1, lat2, lon2):
  """Initial bearing in degrees within [0, 360). Accepts scalars or numpy arrays."""
  phi1 = np.radians(lat1)
  phi2 = np.radians(lat2)
  d_lam = np.radians(np.subtract(lon2, lon1))
  y = np.sin(d_lam) * np.cos(phi2)
  x = np.cos(phi1) * np.sin(phi2) - np.sin(phi1) * np.cos(phi2) * np.cos(d_lam)
  return np.mod(np.degrees(np.arctan2(y, x)) + 360.0, 360.0)


def interpolate_arrays(lat1, lon1, lat2, lon2, fraction) -> tuple[np.ndarray, np.ndarray]:
  """
  Points at `fraction` along the great-circle arcs from (lat1, lon1) to (lat2, lon2).

  All arguments broadcast against each other. Arcs shorter than 1e-10 rad
  resolve to the start point.
  """
  phi1 = np.radians(lat1)
  lam1 = np.radians(lon1)
  phi2 = np.radians(lat2)
  lam2 = np.radians(lon2)
  f = np.asarray(fraction, dtype=np.float64)

  a = np.sin((phi2 - phi1) / 2.0) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin((lam2 - lam1) / 2.0) ** 2
  d = 2.0 * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))
  degenerate = d < DEGENERATE_ARC_RAD
  safe_d = np.where(degenerate, 1.0, d)
  sin_d = np.sin(safe_d)

  big_a = np.sin((1.0 - f) * safe_d) / sin_d
  big_b = np.sin(f * safe_d) / sin_d
  x = big_a * np.cos(phi1) * np.cos(lam1) + big_b * np.cos(phi2) * np.cos(lam2)
  y = big_a * np.cos(phi1) * np.sin(lam1) + big_b * np.cos(phi2) * np.sin(lam2)
  z = big_a * np.sin(phi1) + big_b * np.sin(phi2)

  lat = np.degrees(np.arctan2(z, np.sqrt(x * x + y * y)))
  lon = np.degrees(np.arctan2(y, x))
  shape = np.broadcast(lat, lat1).shape
  lat = np.where(degenerate, np.broadcast_to(lat1, shape), lat)
  lon = np.where(degenerate, np.broadcast_to(lon1, shape), lon)
  return lat, lon


def distance(p1: GeoPoint, p2: GeoPoint) -> float:
  return float(haversine(p1.lat, p1.lon, p2.lat, p2.lon))


def bearing(p1: GeoPoint, p2: GeoPoint) -> float:
  return float(initial_bearing(p1.lat, p1.lon, p2.lat, p2.lon))


def interpolate(p1: GeoPoint, p2: GeoPoint, fraction: float) -> GeoPoint:
  if fraction <= 0.0:
    return GeoPoint(p1.lat, p1.lon)
  if fraction >= 1.0:
    return GeoPoint(p2.lat, p2.lon)
  lat, lon = interpolate_arrays(p1.lat, p1.lon, p2.lat, p2.lon, fraction)
  return GeoPoint(float(lat), float(lon))


def destination(p: GeoPoint, bearing_deg: float, distance_m: float) -> GeoPoint:
  delta = distance_m / EARTH_RADIUS_M
  theta = math.radians(bearing_deg)
  phi1 = math.radians(p.lat)
  lam1 = math.radians(p.lon)

  sin_phi2 = math.sin(phi1) * math.cos(delta) + math.cos(phi1) * math.sin(delta) * math.cos(theta)
  phi2 = math.asin(max(-1.0, min(1.0, sin_phi2)))
  y = math.sin(theta) * math.sin(delta) * math.cos(phi1)
  x = math.cos(delta) - math.sin(phi1) * sin_phi2
  lam2 = lam1 + math.atan2(y, x)
  return GeoPoint(math.degrees(phi2), normalize_lon(math.degrees(lam2)))


def geodesic_distance(p1: GeoPoint, p2: GeoPoint) -> float:
  """Distance on the WGS84 ellipsoid, for reporting alongside the spherical figure."""
  _, _, dist = GEOD.inv(p1.lon, p1.lat, p2.lon, p2.lat)
  return float(dist)


def curvature_drop(d1, d2, k_factor: float = STANDARD_K_FACTOR, radius_m: float = EARTH_RADIUS_M):
  return np.multiply(d1, d2) / (2.0 * radius_m * k_factor)


def wavelength_m(frequency_mhz: float) -> float:
  return SPEED_OF_LIGHT_M_S / (frequency_mhz * 1e6)


def fresnel_radius(d1, d2, frequency_mhz: float):
  """First Fresnel zone radius in meters; zero where d1 + d2 is zero."""
  wavelength = wavelength_m(frequency_mhz)
  total = np.add(d1, d2)
  if np.ndim(total) == 0:
    if total <= 0:
      return 0.0
    return math.sqrt(wavelength * d1 * d2 / total)
  with np.errstate(divide="ignore", invalid="ignore"):
    radius = np.sqrt(wavelength * np.multiply(d1, d2) / total)
  return np.where(total > 0, radius, 0.0)


def meters_to_lat_degrees(meters: float) -> float:
  return meters / METERS_PER_DEGREE


def meters_to_lon_degrees(meters: float, ref_lat: float) -> float:
  return meters / (METERS_PER_DEGREE * math.cos(math.radians(ref_lat)))


def point_in_polygon(lats, lons, vertices: Sequence[GeoPoint]) -> np.ndarray:
  """
  Crossing-number containment test, vectorized over the query points.

  Vertices are treated as a planar lon/lat ring; the closing edge is implicit.
  """
  lats = np.asarray(lats, dtype=np.float64)
  lons = np.asarray(lons, dtype=np.float64)
  inside = np.zeros(np.broadcast(lats, lons).shape, dtype=bool)
  count = len(vertices)
  j = count - 1
  for i in range(count):
    xi, yi = vertices[i].lon, vertices[i].lat
    xj, yj = vertices[j].lon, vertices[j].lat
    if yi != yj:
      straddles = (yi > lats) != (yj > lats)
      x_cross = (xj - xi) * (lats - yi) / (yj - yi) + xi
      inside ^= straddles & (lons < x_cross)
    j = i
  return inside


def spherical_polygon_area(vertices: Sequence[GeoPoint]) -> float:
  if len(vertices) < 3:
    return 0.0
  total = 0.0
  for index, p1 in enumerate(vertices):
    p2 = vertices[(index + 1) % len(vertices)]
    d_lon = math.radians(p2.lon - p1.lon)
    total += d_lon * (2.0 + math.sin(math.radians(p1.lat)) + math.sin(math.radians(p2.lat)))
  return abs(total * EARTH_RADIUS_M * EARTH_RADIUS_M / 2.0)


def polygon_bbox(vertices: Sequence[GeoPoint]) -> tuple[float, float, float, float]:
  """(min_lat, min_lon, max_lat, max_lon) over the vertex list."""
  lats = [v.lat for v in vertices]
  lons = [v.lon for v in vertices]
  return (min(lats), min(lons), max(lats), max(lons))
