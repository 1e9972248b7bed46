#!/usr/bin/env python3
"""piwo.grid

AOI-aligned grids.

Every raster that is stacked, sampled off its native resolution, or exported
lands on the grid defined by (AOI, CRS, scale): origin at the AOI's
upper-left corner in the target CRS, square pixels of `scale` units. Two
rasters reprojected with the same triple share a grid, which is what band
stacking requires.
"""

from __future__ import annotations

import math
from typing import Tuple

from rasterio.transform import Affine
from rasterio.warp import transform_bounds
from shapely.geometry.base import BaseGeometry

from piwo.errors import ConfigError


def aoi_bounds(aoi: BaseGeometry, crs: str) -> Tuple[float, float, float, float]:
    """AOI bounds (lon/lat polygon) expressed in `crs`."""
    # densify so curved edges of the projected bbox are covered
    return transform_bounds("EPSG:4326", crs, *aoi.bounds, densify_pts=21)


def aoi_grid(aoi: BaseGeometry, crs: str, scale: float) -> Tuple[Affine, int, int]:
    """(transform, width, height) of the AOI grid at `scale`."""
    if scale <= 0:
        raise ConfigError(f"scale must be positive (got {scale})")
    xmin, ymin, xmax, ymax = aoi_bounds(aoi, crs)
    width = max(1, int(math.ceil((xmax - xmin) / scale)))
    height = max(1, int(math.ceil((ymax - ymin) / scale)))
    return Affine(scale, 0.0, xmin, 0.0, -scale, ymax), width, height


def pixel_count(aoi: BaseGeometry, crs: str, scale: float) -> int:
    _, width, height = aoi_grid(aoi, crs, scale)
    return width * height
