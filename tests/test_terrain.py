#!/usr/bin/env python3

from __future__ import annotations

import math

import numpy as np
import pytest

from piwo.backends.local import LocalBackend
from piwo.config import StaticLayerSpec
from piwo.errors import ConfigError
from piwo.terrain import add_terrain


def dem_spec(*terrain, **kw):
    return StaticLayerSpec(name="dem", asset="dem.tif", terrain=terrain, flow_band="acc", tpi_radius=90.0, **kw)


@pytest.fixture
def plane(make_raster, grid):
    """Elevation rising 0.1 m per meter to the east (faces west)."""
    _, width, height = grid
    _, cols = np.mgrid[0:height, 0:width]
    return make_raster(elevation=3.0 * cols, acc=1000.0)


def test_slope_and_aspect_of_a_plane(plane, aoi, centre):
    r, c = centre
    out = add_terrain(LocalBackend(), plane, dem_spec("slope", "aspect"), aoi)
    assert out.names == ["elevation", "acc", "slope", "aspect"]
    assert out.bands["slope"][r, c] == pytest.approx(math.degrees(math.atan(0.1)))
    assert out.bands["aspect"][r, c] == pytest.approx(270.0)


def test_tpi_of_a_plane_is_zero(plane, aoi, centre):
    r, c = centre
    out = add_terrain(LocalBackend(), plane, dem_spec("tpi"), aoi)
    assert out.names == ["elevation", "acc", "tpi"]
    assert out.bands["tpi"][r, c] == pytest.approx(0.0, abs=1e-9)


def test_tpi_of_a_peak_is_positive(make_raster, aoi, centre):
    r, c = centre
    dem = make_raster(elevation=100.0, acc=1.0)
    dem.bands["elevation"][r, c] = 110.0
    out = add_terrain(LocalBackend(), dem, dem_spec("tpi"), aoi)
    assert out.bands["tpi"][r, c] > 0
    assert out.bands["tpi"][r + 1, c] < 0


def test_twi(plane, aoi, centre):
    r, c = centre
    out = add_terrain(LocalBackend(), plane, dem_spec("twi"), aoi)
    assert out.bands["twi"][r, c] == pytest.approx(math.log(1000.0 / 0.1))


def test_twi_masked_on_flats(make_raster, aoi, centre):
    r, c = centre
    out = add_terrain(LocalBackend(), make_raster(elevation=5.0, acc=10.0), dem_spec("twi"), aoi)
    assert np.isnan(out.bands["twi"][r, c])


def test_hli_on_flat_ground(make_raster, aoi, centre):
    r, c = centre
    out = add_terrain(LocalBackend(), make_raster(elevation=5.0, acc=1.0), dem_spec("hli"), aoi)
    lat = math.radians(aoi.centroid.y)
    assert out.bands["hli"][r, c] == pytest.approx(math.exp(-1.467 + 1.582 * math.cos(lat)))


def test_hli_south_slope_warmer_than_north(make_raster, grid, aoi, centre):
    r, c = centre
    _, width, height = grid
    rows, _ = np.mgrid[0:height, 0:width]
    # rows run north to south: rising rows face north, falling rows face south
    facing_south = make_raster(elevation=3.0 * rows.max() - 3.0 * rows, acc=1.0)
    facing_north = make_raster(elevation=3.0 * rows, acc=1.0)
    backend = LocalBackend()
    south = add_terrain(backend, facing_south, dem_spec("aspect", "hli"), aoi)
    north = add_terrain(backend, facing_north, dem_spec("aspect", "hli"), aoi)
    assert south.bands["aspect"][r, c] == pytest.approx(180.0)
    assert north.bands["aspect"][r, c] == pytest.approx(0.0)
    assert south.bands["hli"][r, c] > north.bands["hli"][r, c]


def test_missing_elevation_band(make_raster, aoi):
    spec = dem_spec("slope", elevation_band="dem")
    with pytest.raises(ConfigError, match="elevation band"):
        add_terrain(LocalBackend(), make_raster(elevation=1.0, acc=1.0), spec, aoi)


def test_no_terrain_is_a_no_op(plane, aoi):
    out = add_terrain(LocalBackend(), plane, dem_spec(), aoi)
    assert out is plane
