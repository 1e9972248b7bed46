#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from piwo.backends.local import Capture, LocalBackend, reduce_values
from piwo.config import parse_source
from piwo.dates import date_windows
from piwo.series import build_composite, build_series


def s2_source(**overrides):
    d = {
        "collection": "S2",
        "bands": {"RED": "B4", "NIR": "B8", "GREEN": "B3", "SWIR1": "B11"},
        "indices": ["NDVI", "DRS"],
        "keep": ["RED"],
        "max_cloud": 20,
        "mask": {"band": "QA60", "bits": [10, 11]},
        "scale_factor": 0.0001,
    }
    d.update(overrides)
    return parse_source("s2", d)


def month(date):
    return date_windows(date, date, 1, "months")[0]


def test_median_composite_of_clear_captures(local_backend, aoi, centre):
    r, c = centre
    comp = build_composite(local_backend, s2_source(), month("2020-06-01"), aoi)
    assert comp.names == ["RED", "NDVI", "DRS"]
    assert comp.bands["RED"][r, c] == pytest.approx(0.15)
    assert comp.bands["NDVI"][r, c] == pytest.approx((0.5 + 1 / 3) / 2)


def test_composite_carries_period_tags(local_backend, aoi):
    comp = build_composite(local_backend, s2_source(), month("2020-06-01"), aoi)
    assert comp.properties["date"] == "2020-06-01"
    assert comp.properties["year"] == 2020
    assert comp.properties["month"] == 6
    assert comp.properties["source"] == "s2"
    assert "system:time_start" in comp.properties


def test_cloud_limit_is_strict(local_backend, aoi, centre):
    r, c = centre
    # the 2020-06-15 capture has exactly 10% cloud
    comp = build_composite(local_backend, s2_source(max_cloud=10), month("2020-06-01"), aoi)
    assert comp.bands["RED"][r, c] == pytest.approx(0.1)


def test_empty_period_is_fully_masked_but_tagged(local_backend, aoi):
    comp = build_composite(local_backend, s2_source(), month("2020-08-01"), aoi)
    assert comp.names == ["RED", "NDVI", "DRS"]
    assert all(np.isnan(a).all() for a in comp.bands.values())
    assert comp.properties["date"] == "2020-08-01"


def test_cloudy_capture_removed_by_filter(local_backend, aoi):
    # 2020-07-01 capture is 80% cloudy
    comp = build_composite(local_backend, s2_source(), month("2020-07-01"), aoi)
    assert np.isnan(comp.bands["NDVI"]).all()


def test_qa_bits_mask_pixels(local_backend, aoi, centre):
    r, c = centre
    comp = build_composite(local_backend, s2_source(), month("2021-06-01"), aoi)
    assert np.isnan(comp.bands["NDVI"][0]).all()
    assert comp.bands["NDVI"][r, c] == pytest.approx(0.5)


def test_month_filter(local_backend, aoi):
    periods = date_windows("2020-01-01", "2020-01-01", 1, "years")
    comp = build_composite(local_backend, s2_source(months=[7, 8]), periods[0], aoi)
    # only the cloudy July capture is in range, and it is filtered out
    assert np.isnan(comp.bands["NDVI"]).all()


def test_pixels_outside_aoi_are_masked(local_backend, aoi, grid):
    comp = build_composite(local_backend, s2_source(), month("2020-06-01"), aoi)
    ndvi = comp.bands["NDVI"]
    assert np.isfinite(ndvi).any()
    # the projected AOI is not axis-aligned, so some corner of its grid lies outside it
    assert np.isnan(ndvi).any()


def test_series_is_deterministic(local_backend, aoi):
    periods = date_windows("2020-06-01", "2020-08-01", 1, "months")
    a = build_series(local_backend, s2_source(), periods, aoi)
    b = build_series(local_backend, s2_source(), periods, aoi)
    assert len(a) == len(b) == 3
    for x, y in zip(a, b):
        assert x.names == y.names
        for name in x.names:
            assert np.array_equal(x.bands[name], y.bands[name], equal_nan=True)


def test_ndrs_stress_and_prefix(local_backend, aoi, centre):
    r, c = centre
    source = s2_source(ndrs=True, stress_threshold=0.35, prefix="s2_")
    periods = date_windows("2020-06-01", "2020-08-01", 1, "months")
    series = build_series(local_backend, source, periods, aoi)
    june, _, august = series
    assert june.names == ["s2_RED", "s2_NDVI", "s2_DRS", "s2_NDRS", "s2_NDRS_stressed"]
    # uniform rasters: max == min, so the normalization is undefined
    assert np.isnan(june.bands["s2_NDRS"][r, c])
    assert np.isnan(august.bands["s2_NDRS_stressed"]).all()
    assert august.names == june.names


@pytest.fixture
def lc_backend(make_raster, grid):
    """Land-cover maps: 2020 has two 210|220 split maps and one all-220 map; 2021 is all 230."""
    _, width, height = grid
    _, cols = np.mgrid[0:height, 0:width]
    split = np.where(cols < width // 2, 210.0, 220.0)
    captures = [
        Capture(pd.Timestamp("2020-01-01"), make_raster(b1=split), {}),
        Capture(pd.Timestamp("2020-06-01"), make_raster(b1=split), {}),
        Capture(pd.Timestamp("2020-09-01"), make_raster(b1=220.0), {}),
        Capture(pd.Timestamp("2021-01-01"), make_raster(b1=230.0), {}),
    ]
    return LocalBackend({"LC": captures})


def lc_source(**overrides):
    d = {
        "collection": "LC",
        "bands": {"LC": "b1"},
        "keep": ["LC"],
        "reducer": "mode",
        "classes": {"band": "LC", "values": {210: "Conifer", 220: "Broadleaf", 230: "Mixedwood"}},
        "prefix": "lc_",
    }
    d.update(overrides)
    return parse_source("lc", d)


def test_mode_reducer_ignores_masked_values():
    stack = np.array([[210.0, np.nan], [220.0, np.nan], [220.0, np.nan], [np.nan, np.nan]])
    out = reduce_values(stack, "mode")
    assert out[0] == 220.0
    assert np.isnan(out[1])


def test_categorical_series_yields_class_bands(lc_backend, aoi, centre):
    r, c = centre
    periods = date_windows("2020-01-01", "2021-01-01", 1, "years")
    first, second = build_series(lc_backend, lc_source(), periods, aoi)
    assert first.names == ["lc_LC_Conifer", "lc_LC_Broadleaf", "lc_LC_Mixedwood"]
    assert first.names == lc_source().output_bands
    # two of the three 2020 maps have conifer on the left
    assert first.bands["lc_LC_Conifer"][r, c - 1] == 1.0
    assert first.bands["lc_LC_Broadleaf"][r, c] == 1.0
    assert second.bands["lc_LC_Mixedwood"][r, c] == 1.0
    assert second.bands["lc_LC_Conifer"][r, c] == 0.0
