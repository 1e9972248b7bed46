#!/usr/bin/env python3
"""piwo.export

Table and image exports.

Columns of an exported table are either an explicit allow-list (returned
exactly, in order) or every available column minus a housekeeping
exclusion list. The point id column is never dropped.

Image exports check the pixel budget of the AOI grid before anything is
sent to the backend, so an oversized request fails here with a clear
message instead of being truncated or failing mid-export.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from shapely.geometry.base import BaseGeometry

from piwo.backends.base import Backend
from piwo.config import HOUSEKEEPING_COLUMNS, ImageExportSpec, OutputSpec, TableSpec
from piwo.errors import ConfigError, QuotaExceededError
from piwo.grid import pixel_count

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Column selection
# -----------------------------------------------------------------------------

def resolve_columns(
    available: Sequence[str],
    include: Optional[Sequence[str]] = None,
    exclude: Sequence[str] = HOUSEKEEPING_COLUMNS,
    required: Sequence[str] = (),
) -> List[str]:
    """Columns to export.

    - include given: exactly that list; unknown names raise ConfigError
    - otherwise: `available` in order, minus `exclude`

    Every `required` column (the point id) must survive either way.
    """
    if include is not None:
        missing = [c for c in include if c not in available]
        if missing:
            raise ConfigError(f"Columns {missing} not in table; available: {list(available)}")
        dropped = [c for c in required if c not in include]
        if dropped:
            raise ConfigError(f"Column list must include {dropped}")
        return list(include)

    blocked = [c for c in required if c in exclude]
    if blocked:
        raise ConfigError(f"Can't exclude required columns {blocked}")
    return [c for c in available if c not in exclude]


# -----------------------------------------------------------------------------
# Pixel budget
# -----------------------------------------------------------------------------

def check_pixel_budget(aoi: BaseGeometry, crs: str, scale: float, max_pixels: float) -> int:
    """Pixel count of the export grid; QuotaExceededError above `max_pixels`."""
    n = pixel_count(aoi, crs, scale)
    if n > max_pixels:
        raise QuotaExceededError(
            f"Export grid has {n:,} pixels at scale {scale:g} in {crs}, over max_pixels={max_pixels:g}. "
            "Raise the scale or max_pixels."
        )
    return n


# -----------------------------------------------------------------------------
# Exports
# -----------------------------------------------------------------------------

def export_table(backend: Backend, table: Any, spec: TableSpec, id_field: str, output: OutputSpec) -> Any:
    columns = resolve_columns(backend.table_columns(table), spec.columns, spec.exclude, required=[id_field])
    logger.debug(f"Table '{spec.name}' columns: {columns}")
    return backend.export_table(table, columns, spec.name, output)


def export_image(
    backend: Backend,
    raster: Any,
    spec: ImageExportSpec,
    *,
    crs: str,
    scale: float,
    aoi: BaseGeometry,
    output: OutputSpec,
) -> Any:
    crs = spec.crs or crs
    n = check_pixel_budget(aoi, crs, scale, spec.max_pixels)
    logger.debug(f"Image '{spec.name}': {n:,} pixels at {scale:g} m in {crs}")
    return backend.export_image(
        raster, spec.name, crs=crs, scale=scale, aoi=aoi, max_pixels=spec.max_pixels, output=output
    )
