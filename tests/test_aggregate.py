#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pytest

from piwo.aggregate import class_indicators, combine_focal, focal, focal_band_names
from piwo.backends.local import LocalBackend, kernel_footprint
from piwo.config import ClassSpec, KernelSpec
from piwo.errors import ConfigError

from conftest import CRS

LC_CLASSES = ClassSpec("LC", ((210, "Conifer"), (220, "Broadleaf")))


@pytest.fixture
def landcover(make_raster, grid):
    """Two land-cover codes: 210 left of the centre column, 220 from it on."""
    _, width, height = grid
    _, cols = np.mgrid[0:height, 0:width]
    return make_raster(A=1.0, LC=np.where(cols < width // 2, 210.0, 220.0), B=2.0)


@pytest.fixture
def spike(make_raster, centre):
    """Zeros with a single 1 at the grid centre."""
    r, c = centre
    raster = make_raster(A=0.0)
    a = raster.bands["A"]
    a[r, c] = 1.0
    return raster


def test_band_names_encode_reducer_and_radius():
    assert focal_band_names(["A", "B"], KernelSpec(150)) == ["A_150", "B_150"]
    assert focal_band_names(["A"], KernelSpec(150, reducer="stdDev")) == ["A_stdDev_150"]


def test_two_radii_over_two_bands(make_raster, aoi):
    raster = make_raster(A=1.0, B=2.0)
    out = combine_focal(
        LocalBackend(), [raster], [KernelSpec(150), KernelSpec(565)], crs=CRS, target_scale=30.0, aoi=aoi
    )
    assert out.names == ["A_150", "B_150", "A_565", "B_565"]


def test_kernel_outputs_have_distinct_names(make_raster, aoi):
    raster = make_raster(A=1.0, B=2.0)
    kernels = [KernelSpec(90), KernelSpec(90, reducer="max"), KernelSpec(90, reducer="stdDev"), KernelSpec(150)]
    out = combine_focal(LocalBackend(), [raster], kernels, crs=CRS, target_scale=30.0, aoi=aoi)
    assert len(set(out.names)) == len(out.names) == 8


def test_duplicate_band_names_rejected(make_raster, aoi):
    a = make_raster(A=1.0)
    b = make_raster(A=2.0)
    with pytest.raises(ConfigError, match="A_150"):
        combine_focal(LocalBackend(), [a, b], [KernelSpec(150)], crs=CRS, target_scale=30.0, aoi=aoi)


def test_circle_footprint_one_pixel():
    fp = kernel_footprint(KernelSpec(30), 30.0)
    assert fp.sum() == 5
    assert kernel_footprint(KernelSpec(1, units="pixels", shape="square"), 30.0).sum() == 9


def test_focal_mean_sum_count(spike, centre):
    r, c = centre
    backend = LocalBackend()
    mean = focal(backend, spike, KernelSpec(30))
    assert mean.bands["A_30"][r, c] == pytest.approx(0.2)
    assert mean.bands["A_30"][r, c + 1] == pytest.approx(0.2)
    assert mean.bands["A_30"][r + 1, c + 1] == pytest.approx(0.0)
    total = focal(backend, spike, KernelSpec(30, reducer="sum"))
    assert total.bands["A_sum_30"][r, c] == pytest.approx(1.0)
    count = focal(backend, spike, KernelSpec(30, reducer="count"))
    assert count.bands["A_count_30"][r, c] == 5


def test_focal_median_square(spike, centre):
    r, c = centre
    out = focal(LocalBackend(), spike, KernelSpec(1, units="pixels", shape="square", reducer="median"))
    assert out.bands["A_median_1"][r, c] == 0.0


def test_masked_centre_stays_masked(spike, centre):
    r, c = centre
    spike.bands["A"][r, c + 1] = np.nan
    out = focal(LocalBackend(), spike, KernelSpec(30))
    assert np.isnan(out.bands["A_30"][r, c + 1])
    # masked neighbours drop out of the mean
    assert out.bands["A_30"][r, c] == pytest.approx(0.25)


def test_focal_keeps_properties(make_raster):
    raster = make_raster(properties={"date": "2020-01-01"}, A=1.0)
    out = focal(LocalBackend(), raster, KernelSpec(60), properties={"source": "f"})
    assert out.properties == {"date": "2020-01-01", "source": "f"}


def test_reprojected_to_coarser_target(make_raster, aoi, grid):
    _, width, height = grid
    raster = make_raster(A=1.0, B=2.0)
    out = combine_focal(
        LocalBackend(), [raster], [KernelSpec(150), KernelSpec(565)], crs=CRS, target_scale=90.0, aoi=aoi
    )
    h, w = out.shape
    assert (h, w) == (-(-height // 3), -(-width // 3))
    assert out.res == 90.0


def test_class_indicators_replace_categorical_band(landcover, centre):
    r, c = centre
    out = class_indicators(LocalBackend(), landcover, LC_CLASSES)
    assert out.names == ["A", "LC_Conifer", "LC_Broadleaf", "B"]
    assert out.bands["LC_Conifer"][r, 0] == 1.0
    assert out.bands["LC_Broadleaf"][r, 0] == 0.0
    assert out.bands["LC_Broadleaf"][r, c] == 1.0


def test_class_indicators_keep_mask(landcover, centre):
    r, c = centre
    landcover.bands["LC"][r, c] = np.nan
    out = class_indicators(LocalBackend(), landcover, LC_CLASSES)
    assert np.isnan(out.bands["LC_Conifer"][r, c])
    assert np.isnan(out.bands["LC_Broadleaf"][r, c])


def test_class_indicators_need_the_class_band(make_raster):
    with pytest.raises(ConfigError, match="LC"):
        class_indicators(LocalBackend(), make_raster(A=1.0), LC_CLASSES)


def test_focal_class_proportions_sum_to_one(landcover, centre, aoi):
    r, c = centre
    backend = LocalBackend()
    indicators = backend.select(class_indicators(backend, landcover, LC_CLASSES), LC_CLASSES.band_names)
    out = combine_focal(backend, [indicators], [KernelSpec(150)], crs=CRS, target_scale=30.0, aoi=aoi)
    assert out.names == ["LC_Conifer_150", "LC_Broadleaf_150"]

    total = out.bands["LC_Conifer_150"] + out.bands["LC_Broadleaf_150"]
    valid = np.isfinite(total)
    assert valid.any()
    assert np.allclose(total[valid], 1.0)
    # the kernel at the centre straddles the class boundary
    assert 0.0 < out.bands["LC_Conifer_150"][r, c] < 1.0
    assert out.bands["LC_Conifer_150"][r, 0] == pytest.approx(1.0)
