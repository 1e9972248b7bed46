#!/usr/bin/env python3
"""piwo.series

Raster-series builder: one composite per period for an image source.

Per period:
  1. query captures in the period window intersecting the AOI
     (cloud and calendar-month filters are applied by the backend)
  2. QA bit mask + reflectance scale/offset
  3. spectral indices from piwo.indices
  4. per-pixel reduce (source reducer, default median), clip to the AOI
  5. tag with date / year / month / system:time_start / source

Then, optionally: 0/1 class indicator bands for a categorical band, NDRS
(DRS min-max normalized over the AOI), the binary NDRS_stressed band, and a
band-name prefix.

A period without captures still yields a composite: every band is masked and
the period tags are set, so downstream tables get null rows rather than gaps.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from shapely.geometry.base import BaseGeometry

from piwo.aggregate import class_indicators
from piwo.backends.base import Backend
from piwo.config import SourceSpec
from piwo.dates import Period
from piwo.indices import IndexSpec, resolve_indices

logger = logging.getLogger(__name__)


def build_composite(
    backend: Backend,
    source: SourceSpec,
    period: Period,
    aoi: BaseGeometry,
    indices: Optional[Sequence[IndexSpec]] = None,
) -> Any:
    """Composite of one source over one period, tagged with the period."""
    if indices is None:
        indices = resolve_indices(source.indices, source.bands)
    start, end = period.window(source.window)

    collection = backend.query(source, start, end, aoi)
    n = backend.collection_size(collection)
    if n == 0:
        logger.warning(f"{source.name} {period.date}: no captures in [{start.date()}, {end.date()}); composite is fully masked")
    elif n is not None:
        logger.debug(f"{source.name} {period.date}: {n} captures")

    collection = backend.mask_and_scale(collection, source)
    collection = backend.add_indices(collection, source, indices)
    composite = backend.reduce_collection(collection, source, source.composite_bands, aoi)
    return backend.set_properties(composite, {**period.properties(), "source": source.name})


def add_stress_bands(backend: Backend, raster: Any, source: SourceSpec, aoi: BaseGeometry, scale: float) -> Any:
    """Append NDRS and, with a stress threshold, NDRS_stressed (1 where NDRS > threshold)."""
    raster = backend.normalize_band(raster, "DRS", "NDRS", aoi, scale)
    if source.stress_threshold is not None:
        raster = backend.add_expression(
            raster, "NDRS_stressed", f"NDRS > {source.stress_threshold!r}", {"NDRS": "NDRS"}
        )
    return raster


def build_series(
    backend: Backend,
    source: SourceSpec,
    periods: Sequence[Period],
    aoi: BaseGeometry,
    ndrs_scale: float = 30.0,
) -> List[Any]:
    """Composites for every period, in period order.

    `ndrs_scale` is the scale the DRS min/max is taken at.
    """
    indices = resolve_indices(source.indices, source.bands)
    series = []
    for period in periods:
        raster = build_composite(backend, source, period, aoi, indices)
        if source.classes is not None:
            raster = class_indicators(backend, raster, source.classes, source.composite_bands)
        if source.ndrs:
            raster = add_stress_bands(backend, raster, source, aoi, ndrs_scale)
        if source.prefix:
            raster = backend.rename(raster, source.output_bands)
        series.append(raster)
    logger.info(f"Built {len(series)} {source.name} composites ({', '.join(source.output_bands)})")
    return series
