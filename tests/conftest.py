#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import numpy as np
import pandas as pd
import geopandas as gpd
import pytest
from shapely.geometry import Point, box

from piwo.backends.local import Capture, LocalBackend, Raster
from piwo.grid import aoi_grid

CRS = "EPSG:3348"
SCALE = 30.0
# ~1.3 x 1.1 km near Edmonton
AOI_BOUNDS = (-113.52, 53.50, -113.50, 53.51)


@pytest.fixture
def aoi():
    return box(*AOI_BOUNDS)


@pytest.fixture
def grid(aoi):
    """(transform, width, height) of the 30 m AOI grid in EPSG:3348."""
    return aoi_grid(aoi, CRS, SCALE)


@pytest.fixture
def make_raster(grid):
    """Build a Raster on the AOI grid; band values may be scalars or arrays."""
    transform, width, height = grid

    def _make(properties=None, **bands):
        arrays = {}
        for name, value in bands.items():
            a = np.asarray(value, dtype="float64")
            arrays[name] = np.full((height, width), float(a)) if a.ndim == 0 else a.copy()
        return Raster(arrays, transform, CRS, dict(properties or {}))

    return _make


@pytest.fixture
def cell_lonlat(grid):
    """Lon/lat of the centre of grid cell (row, col)."""
    transform, _, _ = grid

    def _lonlat(row, col):
        x, y = transform * (col + 0.5, row + 0.5)
        p = gpd.GeoSeries([Point(x, y)], crs=CRS).to_crs("EPSG:4326").iloc[0]
        return p.x, p.y

    return _lonlat


@pytest.fixture
def centre(grid):
    _, width, height = grid
    return height // 2, width // 2


@pytest.fixture
def points_gdf(cell_lonlat, centre):
    """Three survey points on cells around the grid centre."""
    r, c = centre
    cells = {"A1": (r, c), "A2": (r - 3, c + 2), "A3": (r + 4, c - 3)}
    rows = []
    for loc, (row, col) in cells.items():
        lon, lat = cell_lonlat(row, col)
        rows.append({"location": loc, "lon": lon, "lat": lat, "row": row, "col": col})
    df = pd.DataFrame(rows)
    return gpd.GeoDataFrame(df, geometry=gpd.points_from_xy(df.lon, df.lat), crs="EPSG:4326")


@pytest.fixture
def s2_captures(make_raster, grid):
    """Captures of a tiny Sentinel-2-like collection.

    2020-06: two clear captures (RED 0.1/0.2, NIR 0.3/0.4 after scaling)
    2020-07: one capture over the cloud limit
    2021-06: one clear capture with a cloud bit set on row 0
    """
    _, width, height = grid
    qa_cloudy = np.zeros((height, width))
    qa_cloudy[0, :] = 1 << 10

    def cap(date, red, nir, cloud, qa=0.0):
        return Capture(
            pd.Timestamp(date),
            make_raster(B4=red, B8=nir, B3=500, B11=1500, QA60=qa),
            {"CLOUDY_PIXEL_PERCENTAGE": cloud},
        )

    return [
        cap("2020-06-01", 1000, 3000, 5),
        cap("2020-06-15", 2000, 4000, 10),
        cap("2020-07-01", 9000, 9000, 80),
        cap("2021-06-10", 1000, 3000, 1, qa_cloudy),
    ]


@pytest.fixture
def local_backend(s2_captures):
    return LocalBackend({"S2": s2_captures})
