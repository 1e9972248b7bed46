#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from piwo.backends.local import LocalBackend
from piwo.config import PointsSpec, TableSpec
from piwo.errors import ConfigError
from piwo.extract import buffer_points, extract, load_points

from conftest import CRS


@pytest.fixture
def ramp(make_raster, grid):
    """A = 100 * row + col, so every cell has a distinct value."""
    _, width, height = grid
    rows, cols = np.mgrid[0:height, 0:width]
    return make_raster(properties={"date": "2020-06-01", "year": 2020, "month": 6, "source": "s2"}, A=100.0 * rows + cols)


def sample(rasters, points, aoi, **kw):
    spec = TableSpec(name="t", input="s2", **kw)
    return extract(LocalBackend(), rasters, points, spec, id_field="location", crs=CRS, aoi=aoi)


def test_load_points_from_csv(tmp_path, points_gdf):
    path = tmp_path / "points.csv"
    points_gdf.drop(columns="geometry").to_csv(path, index=False)
    pts = load_points(PointsSpec(path=path))
    assert list(pts["location"]) == ["A1", "A2", "A3"]
    assert pts.crs.to_string() == "EPSG:4326"
    assert pts.geometry.x.iloc[0] == pytest.approx(points_gdf.lon.iloc[0])


def test_load_points_rejects_duplicate_ids(tmp_path):
    path = tmp_path / "points.csv"
    pd.DataFrame({"location": ["a", "a"], "lon": [-113.51, -113.51], "lat": [53.505, 53.506]}).to_csv(path, index=False)
    with pytest.raises(ConfigError, match="duplicate"):
        load_points(PointsSpec(path=path))


def test_load_points_missing_columns(tmp_path):
    path = tmp_path / "points.csv"
    pd.DataFrame({"location": ["a"], "x": [1.0], "y": [2.0]}).to_csv(path, index=False)
    with pytest.raises(ConfigError, match="coordinate columns"):
        load_points(PointsSpec(path=path))


def test_load_points_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_points(PointsSpec(path=tmp_path / "nope.csv"))


def test_point_values_equal_pixel_values(ramp, points_gdf, aoi):
    table = sample([ramp], points_gdf, aoi)
    assert len(table) == 3
    for _, row in table.iterrows():
        assert row["A"] == 100.0 * row["row"] + row["col"]


def test_rows_are_points_times_rasters(ramp, points_gdf, aoi, make_raster):
    other = make_raster(properties={"date": "2021-06-01", "year": 2021, "month": 6, "source": "s2"}, A=1.0)
    table = sample([ramp, other], points_gdf, aoi)
    assert len(table) == 6
    assert table["location"].notna().all()
    assert set(table["location"]) == {"A1", "A2", "A3"}
    assert sorted(table["date"].unique()) == ["2020-06-01", "2021-06-01"]


def test_masked_values_become_null(ramp, points_gdf, aoi):
    r, c = points_gdf.loc[0, ["row", "col"]]
    ramp.bands["A"][int(r), int(c)] = np.nan
    table = sample([ramp], points_gdf, aoi)
    assert np.isnan(table.loc[0, "A"])
    assert table.loc[0, "location"] == "A1"
    assert table["A"].iloc[1:].notna().all()


def test_buffer_mean(ramp, points_gdf, aoi):
    # a 35 m buffer covers the cell and its four edge neighbours; the ramp is linear
    table = sample([ramp], points_gdf, aoi, buffer=35.0, reducer="mean")
    for _, row in table.iterrows():
        assert row["A"] == pytest.approx(100.0 * row["row"] + row["col"])


def test_buffer_max(ramp, points_gdf, aoi):
    table = sample([ramp], points_gdf, aoi, buffer=35.0, reducer="max")
    for _, row in table.iterrows():
        assert row["A"] == pytest.approx(100.0 * (row["row"] + 1) + row["col"])


def test_buffer_points_are_polygons(points_gdf):
    buffered = buffer_points(points_gdf, 100.0, CRS)
    assert (buffered.geom_type == "Polygon").all()
    area = buffered.to_crs(CRS).area
    assert np.allclose(area, np.pi * 100.0**2, rtol=0.01)


def test_points_outside_raster_get_nulls(ramp, points_gdf, aoi):
    far = points_gdf.copy()
    far["geometry"] = far.geometry.translate(xoff=1.0)
    table = sample([ramp], far, aoi)
    assert table["A"].isna().all()
