#!/usr/bin/env python3
"""piwo.extract

Point extraction: sample rasters at survey locations.

Points come from a CSV with x/y columns or from any vector file geopandas
can read. Each point keeps its attributes; the id field must be present,
non-null and unique.

With `buffer > 0` the points become circles of that radius (meters, built
in the pipeline CRS) and are reduced with the table reducer (mean by
default); otherwise the pixel under each point is taken ("first").

Tables are long: one row per (point, raster), with the raster's period tags
(date, year, month, source) copied onto each row. Tables from several
rasters are concatenated, never joined. Masked pixels come back as nulls.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

import geopandas as gpd
import pandas as pd
from shapely.geometry.base import BaseGeometry

from piwo.backends.base import Backend
from piwo.config import PointsSpec, TableSpec
from piwo.dates import PERIOD_PROPERTIES
from piwo.errors import BackendError, ConfigError

logger = logging.getLogger(__name__)


def load_points(spec: PointsSpec) -> gpd.GeoDataFrame:
    """Read survey points into a GeoDataFrame in EPSG:4326."""
    path = spec.path
    if not path.exists():
        raise ConfigError(f"Points file not found: {path}")

    if path.suffix.lower() in (".csv", ".txt"):
        df = pd.read_csv(path)
        missing = [c for c in (spec.x_field, spec.y_field) if c not in df.columns]
        if missing:
            raise ConfigError(f"{path}: missing coordinate columns {missing}; found {list(df.columns)}")
        gdf = gpd.GeoDataFrame(df, geometry=gpd.points_from_xy(df[spec.x_field], df[spec.y_field]), crs=spec.crs)
    else:
        gdf = gpd.read_file(path, layer=spec.layer)
        if gdf.crs is None:
            raise ConfigError(f"{path}: no CRS on the points layer")

    if spec.id_field not in gdf.columns:
        raise ConfigError(f"{path}: id field '{spec.id_field}' not found; columns: {list(gdf.columns)}")
    if gdf[spec.id_field].isna().any():
        raise ConfigError(f"{path}: null values in id field '{spec.id_field}'")
    dupes = gdf[spec.id_field][gdf[spec.id_field].duplicated()].tolist()
    if dupes:
        raise ConfigError(f"{path}: duplicate ids in '{spec.id_field}': {dupes[:10]}")

    logger.debug(f"Loaded {len(gdf)} points from {path}")
    return gdf.to_crs("EPSG:4326")


def buffer_points(points: gpd.GeoDataFrame, buffer: float, crs: str) -> gpd.GeoDataFrame:
    """Circles of `buffer` meters around each point, built in `crs`, returned in EPSG:4326."""
    projected = points.to_crs(crs)
    projected = projected.set_geometry(projected.geometry.buffer(buffer))
    return projected.to_crs("EPSG:4326")


def extract(
    backend: Backend,
    rasters: Sequence[Any],
    points: gpd.GeoDataFrame,
    spec: TableSpec,
    *,
    id_field: str,
    crs: str,
    aoi: BaseGeometry,
) -> Any:
    """Sample every raster at every point; one row per (point, raster)."""
    sites = buffer_points(points, spec.buffer, crs) if spec.buffer > 0 else points
    tables = [
        backend.sample(
            raster,
            sites,
            id_field=id_field,
            reducer=spec.reducer,
            crs=crs,
            scale=spec.scale,
            tile_scale=spec.tile_scale,
            aoi=aoi,
            properties=PERIOD_PROPERTIES,
        )
        for raster in rasters
    ]
    table = backend.concat_tables(tables)

    if isinstance(table, pd.DataFrame):
        expected = len(points) * len(rasters)
        if len(table) != expected:
            raise BackendError(f"Table '{spec.name}': expected {expected} rows, got {len(table)}")
    logger.info(f"Table '{spec.name}': {len(points)} points x {len(rasters)} rasters ({spec.reducer}, buffer {spec.buffer:g} m)")
    return table
