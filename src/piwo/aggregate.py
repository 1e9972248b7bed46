#!/usr/bin/env python3
"""piwo.aggregate

Neighbourhood (focal) aggregation.

Each kernel reduces every band of a raster over a circle or square
neighbourhood and renames the output bands so (variable, reducer, radius) can
be read back from the name:

  mean kernel, radius 150      A -> A_150
  stdDev kernel, radius 150    A -> A_stdDev_150

Several kernels over several rasters can be combined into one multiband
raster on a common target grid. Band order is kernel-major:

  radii [150, 565] over bands [A, B] -> A_150, B_150, A_565, B_565

Categorical bands (land cover) are first expanded into 0/1 class indicator
bands, so a mean kernel yields class proportions:

  LC with classes {210: Conifer, 220: Broadleaf} -> LC_Conifer, LC_Broadleaf
  mean kernel, radius 565 -> LC_Conifer_565, LC_Broadleaf_565
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Sequence

from shapely.geometry.base import BaseGeometry

from piwo.backends.base import Backend
from piwo.config import ClassSpec, KernelSpec
from piwo.errors import ConfigError

logger = logging.getLogger(__name__)


def class_indicators(backend: Backend, raster: Any, classes: ClassSpec, band_names: Optional[Sequence[str]] = None) -> Any:
    """Replace the categorical band with one 0/1 band per class; masked pixels stay masked."""
    names = list(band_names) if band_names is not None else backend.band_names(raster)
    if classes.band not in names:
        raise ConfigError(f"Class band '{classes.band}' not found; available: {names}")
    for (code, _), name in zip(classes.values, classes.band_names):
        raster = backend.add_expression(raster, name, f"C == {code}", {"C": classes.band})
    return backend.select(raster, classes.expand(names))


def focal_band_names(bands: Sequence[str], kernel: KernelSpec) -> List[str]:
    return [f"{b}_{kernel.suffix}" for b in bands]


def focal(
    backend: Backend,
    raster: Any,
    kernel: KernelSpec,
    band_names: Optional[Sequence[str]] = None,
    properties: Optional[Mapping[str, Any]] = None,
) -> Any:
    """Apply one kernel to every band and rename the outputs.

    `properties` are set on the result (Earth Engine drops image properties
    in neighbourhood reductions).
    """
    names = list(band_names) if band_names is not None else backend.band_names(raster)
    out = backend.rename(backend.focal(raster, kernel), focal_band_names(names, kernel))
    if properties:
        out = backend.set_properties(out, properties)
    return out


def combine_focal(
    backend: Backend,
    rasters: Sequence[Any],
    kernels: Sequence[KernelSpec],
    *,
    crs: str,
    target_scale: float,
    aoi: BaseGeometry,
    properties: Optional[Mapping[str, Any]] = None,
) -> Any:
    """Every kernel over every raster, stacked on the (AOI, crs, target_scale) grid.

    Raises ConfigError if two outputs end up with the same band name.
    """
    if not rasters or not kernels:
        raise ConfigError("combine_focal needs at least one raster and one kernel")

    names = [backend.band_names(r) for r in rasters]
    expected: List[str] = []
    for kernel in kernels:
        for bands in names:
            expected.extend(focal_band_names(bands, kernel))
    dupes = sorted({n for n in expected if expected.count(n) > 1})
    if dupes:
        raise ConfigError(f"Focal outputs share band names: {dupes}")

    parts = [focal(backend, r, k, bands) for k in kernels for r, bands in zip(rasters, names)]
    if len(parts) > 1:
        parts = [backend.reproject(p, crs, target_scale, aoi) for p in parts]
    combined = backend.stack(parts) if len(parts) > 1 else parts[0]
    if properties:
        combined = backend.set_properties(combined, properties)
    logger.debug(f"Combined {len(parts)} focal outputs -> {len(expected)} bands at {target_scale:g} m")
    return combined
