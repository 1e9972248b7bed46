#!/usr/bin/env python3
"""piwo.backends.base

The raster backend interface the pipeline stages call.

A backend owns three kinds of handle:
- collection: the captures a query returned (list of captures locally,
  ee.ImageCollection on Earth Engine)
- raster: one multiband image (local Raster, ee.Image)
- table: sampled rows (pandas DataFrame, ee.FeatureCollection)

Pipeline code never looks inside a handle; it only passes handles back to
the backend. Operations return new handles and never mutate their inputs.
Band order is preserved by every operation that keeps bands, and bands
added by an operation are appended at the end.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Mapping, Optional, Sequence

import geopandas as gpd
from shapely.geometry.base import BaseGeometry

from piwo.config import KernelSpec, MapLayerSpec, OutputSpec, SourceSpec, StaticLayerSpec
from piwo.indices import IndexSpec


class Backend(ABC):
    name: str = "abstract"

    # --- collections -------------------------------------------------------

    @abstractmethod
    def query(self, source: SourceSpec, start: Any, end: Any, aoi: BaseGeometry) -> Any:
        """Captures in [start, end) intersecting the AOI that pass the source's
        cloud and calendar-month filters."""

    def collection_size(self, collection: Any) -> Optional[int]:
        """Number of captures if it is known without a server round trip."""
        return None

    @abstractmethod
    def mask_and_scale(self, collection: Any, source: SourceSpec) -> Any:
        """Apply the QA mask and reflectance scaling, keeping the mapped bands."""

    @abstractmethod
    def add_indices(self, collection: Any, source: SourceSpec, indices: Sequence[IndexSpec]) -> Any:
        """Add alias-named copies of `source.keep` bands and one band per index."""

    @abstractmethod
    def reduce_collection(self, collection: Any, source: SourceSpec, bands: Sequence[str], aoi: BaseGeometry) -> Any:
        """Per-pixel reduce `bands` over the collection, clipped to the AOI.

        An empty collection gives a fully masked raster with the same bands.
        """

    # --- rasters -----------------------------------------------------------

    @abstractmethod
    def set_properties(self, raster: Any, properties: Mapping[str, Any]) -> Any:
        ...

    @abstractmethod
    def band_names(self, raster: Any) -> List[str]:
        ...

    @abstractmethod
    def select(self, raster: Any, bands: Sequence[str]) -> Any:
        ...

    @abstractmethod
    def rename(self, raster: Any, names: Sequence[str]) -> Any:
        """Rename bands positionally."""

    @abstractmethod
    def add_expression(self, raster: Any, name: str, expression: str, variables: Mapping[str, str]) -> Any:
        """Append band `name` computed from `expression`; variables map
        expression names to band names. Masked inputs give masked output."""

    @abstractmethod
    def normalize_band(self, raster: Any, band: str, name: str, aoi: BaseGeometry, scale: float) -> Any:
        """Append `name` = (band - min) / (max - min), min/max taken over the AOI."""

    @abstractmethod
    def load_static(self, spec: StaticLayerSpec, aoi: BaseGeometry) -> Any:
        ...

    @abstractmethod
    def terrain(self, raster: Any, band: str) -> Any:
        """Append `slope` and `aspect` (degrees, aspect clockwise from north)."""

    @abstractmethod
    def focal(self, raster: Any, kernel: KernelSpec) -> Any:
        """Neighbourhood-reduce every band at the raster's native resolution.

        Output pixels are masked where the centre pixel is masked. Band names
        are left for the caller to set.
        """

    @abstractmethod
    def reproject(self, raster: Any, crs: str, scale: float, aoi: BaseGeometry) -> Any:
        """Resample onto the AOI grid (see piwo.grid)."""

    @abstractmethod
    def stack(self, rasters: Sequence[Any]) -> Any:
        """Concatenate bands of rasters that share a grid."""

    # --- tables ------------------------------------------------------------

    @abstractmethod
    def sample(
        self,
        raster: Any,
        points: gpd.GeoDataFrame,
        *,
        id_field: str,
        reducer: str,
        crs: str,
        scale: float,
        tile_scale: float,
        aoi: BaseGeometry,
        properties: Sequence[str],
    ) -> Any:
        """One row per point: point attributes, reduced band values and the
        raster `properties` copied onto the row."""

    @abstractmethod
    def concat_tables(self, tables: Sequence[Any]) -> Any:
        ...

    @abstractmethod
    def table_columns(self, table: Any) -> List[str]:
        ...

    # --- exports -----------------------------------------------------------

    @abstractmethod
    def export_table(self, table: Any, columns: Sequence[str], name: str, output: OutputSpec) -> Any:
        ...

    @abstractmethod
    def export_image(
        self,
        raster: Any,
        name: str,
        *,
        crs: str,
        scale: float,
        aoi: BaseGeometry,
        max_pixels: float,
        output: OutputSpec,
    ) -> Any:
        ...

    def finish(self, exports: Iterable[Any], output: OutputSpec) -> None:
        """Hook run after all exports were issued."""

    # --- map ---------------------------------------------------------------

    @abstractmethod
    def map_layer(self, raster: Any, spec: MapLayerSpec, title: str, show: bool) -> Any:
        """A folium layer rendering `spec.band` of the raster."""
