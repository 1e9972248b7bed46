#!/usr/bin/env python3
"""piwo.backends.earthengine

Google Earth Engine backend.

Every operation builds a deferred ee graph; nothing runs until a table or
image export starts (or band names / column names are requested, which cost
one small getInfo() round trip each). Exports go to Google Drive as batch
tasks; with `output.wait` the backend polls them until they finish and
raises BackendError when any of them failed or was cancelled.

Quota errors (maxPixels, memory, request size) come back from Earth Engine
as ee.EEException and are not caught here.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Iterable, List, Mapping, Optional, Sequence

import ee
import geopandas as gpd
from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry

from piwo.backends.base import Backend
from piwo.config import KernelSpec, MapLayerSpec, OutputSpec, SourceSpec, StaticLayerSpec
from piwo.errors import BackendError
from piwo.indices import IndexSpec

logger = logging.getLogger(__name__)

DONE_STATES = ("COMPLETED", "FAILED", "CANCELLED")


def initialize(project: Optional[str] = None) -> None:
    """Initialize Earth Engine, authenticating once if needed."""
    try:
        ee.Initialize(project=project)
    except ee.EEException:
        logger.info("Authenticating Earth Engine...")
        ee.Authenticate()
        ee.Initialize(project=project)
    logger.info(f"Earth Engine initialized (project={project})")


def wait_for_tasks(tasks: Sequence[Any], poll_seconds: float = 30.0) -> dict:
    """Poll export tasks until every one is COMPLETED, FAILED or CANCELLED.

    Returns {description: final status dict}.
    """
    statuses: dict = {}
    while True:
        pending = 0
        for task in tasks:
            status = task.status()
            statuses[status.get("description", task.id)] = status
            if status["state"] not in DONE_STATES:
                pending += 1
            elif status["state"] == "FAILED":
                logger.error(f"Export {status.get('description')} failed: {status.get('error_message')}")
        if not pending:
            return statuses
        logger.info(f"{pending} export task(s) still running; checking again in {poll_seconds:g}s")
        time.sleep(poll_seconds)


def _reducer(name: str) -> ee.Reducer:
    return getattr(ee.Reducer, name)()


class EarthEngineBackend(Backend):
    name = "earthengine"

    def __init__(self, project: Optional[str] = None, initialize_ee: bool = True):
        if initialize_ee:
            initialize(project)
        self.project = project

    # --- helpers -----------------------------------------------------------

    def geometry(self, aoi: BaseGeometry) -> ee.Geometry:
        # planar edges: the AOI is a lon/lat polygon, not a geodesic one
        return ee.Geometry(json.loads(json.dumps(mapping(aoi))), None, False)

    def features(self, points: gpd.GeoDataFrame) -> ee.FeatureCollection:
        return ee.FeatureCollection(json.loads(points.to_crs("EPSG:4326").to_json()))

    # --- collections -------------------------------------------------------

    def query(self, source: SourceSpec, start: Any, end: Any, aoi: BaseGeometry) -> ee.ImageCollection:
        col = (
            ee.ImageCollection(source.collection)
            .filterDate(ee.Date(str(start.date())), ee.Date(str(end.date())))
            .filterBounds(self.geometry(aoi))
        )
        if source.max_cloud is not None:
            col = col.filter(ee.Filter.lt(source.cloud_property, source.max_cloud))
        if source.months is not None:
            col = col.filter(ee.Filter.calendarRange(source.months[0], source.months[1], "month"))
        return col

    def mask_and_scale(self, collection: ee.ImageCollection, source: SourceSpec) -> ee.ImageCollection:
        spectral = sorted(set(source.bands.values()))
        mask = source.mask

        def _prep(img):
            out = ee.Image(img)
            if mask is not None:
                out = out.updateMask(out.select(mask.band).bitwiseAnd(mask.bitmask).eq(0))
            scaled = out.select(spectral).multiply(source.scale_factor).add(source.offset)
            return ee.Image(scaled.copyProperties(img, ["system:time_start"]))

        return collection.map(_prep)

    def add_indices(self, collection: ee.ImageCollection, source: SourceSpec, indices: Sequence[IndexSpec]) -> ee.ImageCollection:
        def _add(img):
            img = ee.Image(img)
            out = img
            for alias in source.keep:
                out = out.addBands(img.select([source.bands[alias]], [alias]), None, True)
            for spec in indices:
                variables = {a: img.select(source.bands[a]) for a in spec.aliases}
                out = out.addBands(img.expression(spec.expression, variables).rename(spec.name), None, True)
            return out

        return collection.map(_add)

    def reduce_collection(self, collection: ee.ImageCollection, source: SourceSpec, bands: Sequence[str], aoi: BaseGeometry) -> ee.Image:
        bands = list(bands)
        composite = collection.select(bands).reduce(_reducer(source.reducer)).rename(bands)
        empty = ee.Image.constant([0] * len(bands)).rename(bands).toFloat().updateMask(ee.Image.constant(0))
        img = ee.Image(ee.Algorithms.If(collection.size().gt(0), composite, empty))
        return img.toFloat().clip(self.geometry(aoi))

    # --- rasters -----------------------------------------------------------

    def set_properties(self, raster: ee.Image, properties: Mapping[str, Any]) -> ee.Image:
        return ee.Image(raster.set(dict(properties)))

    def band_names(self, raster: ee.Image) -> List[str]:
        return raster.bandNames().getInfo()

    def select(self, raster: ee.Image, bands: Sequence[str]) -> ee.Image:
        return raster.select(list(bands))

    def rename(self, raster: ee.Image, names: Sequence[str]) -> ee.Image:
        return raster.rename(list(names))

    def add_expression(self, raster: ee.Image, name: str, expression: str, variables: Mapping[str, str]) -> ee.Image:
        bound = {k: raster.select(b) for k, b in variables.items()}
        return raster.addBands(raster.expression(expression, bound).rename(name), None, True)

    def normalize_band(self, raster: ee.Image, band: str, name: str, aoi: BaseGeometry, scale: float) -> ee.Image:
        stats = raster.select(band).reduceRegion(
            reducer=ee.Reducer.minMax(),
            geometry=self.geometry(aoi),
            scale=scale,
            maxPixels=1e13,
            bestEffort=True,
        )
        # a fully masked band has null min/max; keep the result masked instead of failing
        lo = ee.Number(ee.Algorithms.If(stats.get(f"{band}_min"), stats.get(f"{band}_min"), 0))
        hi = ee.Number(ee.Algorithms.If(stats.get(f"{band}_max"), stats.get(f"{band}_max"), 0))
        norm = raster.select(band).subtract(lo).divide(hi.subtract(lo)).rename(name)
        return raster.addBands(norm, None, True)

    def load_static(self, spec: StaticLayerSpec, aoi: BaseGeometry) -> ee.Image:
        img = ee.ImageCollection(spec.asset).mosaic() if spec.mosaic else ee.Image(spec.asset)
        if spec.bands:
            img = img.select(list(spec.bands), list(spec.rename or spec.bands))
        return img.clip(self.geometry(aoi))

    def terrain(self, raster: ee.Image, band: str) -> ee.Image:
        dem = raster.select(band)
        return raster.addBands([ee.Terrain.slope(dem), ee.Terrain.aspect(dem)], None, True)

    def focal(self, raster: ee.Image, kernel: KernelSpec) -> ee.Image:
        # sum and count need an unnormalized kernel
        normalize = kernel.reducer not in ("sum", "count")
        if kernel.shape == "square":
            k = ee.Kernel.square(kernel.radius, kernel.units, normalize)
        else:
            k = ee.Kernel.circle(kernel.radius, kernel.units, normalize)
        return raster.reduceNeighborhood(reducer=_reducer(kernel.reducer), kernel=k)

    def reproject(self, raster: ee.Image, crs: str, scale: float, aoi: BaseGeometry) -> ee.Image:
        return raster.reproject(crs=crs, scale=scale)

    def stack(self, rasters: Sequence[ee.Image]) -> ee.Image:
        return ee.Image.cat(list(rasters))

    # --- tables ------------------------------------------------------------

    def sample(
        self,
        raster: ee.Image,
        points: gpd.GeoDataFrame,
        *,
        id_field: str,
        reducer: str,
        crs: str,
        scale: float,
        tile_scale: float,
        aoi: BaseGeometry,
        properties: Sequence[str],
    ) -> ee.FeatureCollection:
        red = _reducer(reducer)
        names = self.band_names(raster)
        if len(names) == 1:
            # single-band reductions are otherwise named after the reducer
            red = red.setOutputs(names)
        reduced = raster.reduceRegions(
            collection=self.features(points),
            reducer=red,
            crs=crs,
            scale=scale,
            tileScale=tile_scale,
        )
        keys = list(properties)
        return reduced.map(lambda f: ee.Feature(f).copyProperties(raster, keys))

    def concat_tables(self, tables: Sequence[ee.FeatureCollection]) -> ee.FeatureCollection:
        return ee.FeatureCollection(list(tables)).flatten()

    def table_columns(self, table: ee.FeatureCollection) -> List[str]:
        return ee.Feature(table.first()).propertyNames().getInfo()

    # --- exports -----------------------------------------------------------

    def export_table(self, table: ee.FeatureCollection, columns: Sequence[str], name: str, output: OutputSpec) -> Any:
        task = ee.batch.Export.table.toDrive(
            collection=table,
            description=name,
            folder=output.drive_folder,
            fileNamePrefix=name,
            fileFormat="CSV",
            selectors=list(columns),
        )
        task.start()
        logger.info(f"Started table export {name} -> Drive/{output.drive_folder}")
        return task

    def export_image(
        self,
        raster: ee.Image,
        name: str,
        *,
        crs: str,
        scale: float,
        aoi: BaseGeometry,
        max_pixels: float,
        output: OutputSpec,
    ) -> Any:
        task = ee.batch.Export.image.toDrive(
            image=raster.toFloat(),
            description=name,
            folder=output.drive_folder,
            fileNamePrefix=name,
            crs=crs,
            scale=scale,
            region=self.geometry(aoi),
            maxPixels=int(max_pixels),
        )
        task.start()
        logger.info(f"Started image export {name} ({crs}, {scale:g} m) -> Drive/{output.drive_folder}")
        return task

    def finish(self, exports: Iterable[Any], output: OutputSpec) -> None:
        if not output.wait:
            return
        statuses = wait_for_tasks(list(exports))
        failed = [
            f"{d} ({s['state']}: {s.get('error_message', 'no message')})"
            for d, s in statuses.items()
            if s["state"] != "COMPLETED"
        ]
        if failed:
            raise BackendError(f"Exports did not complete: {'; '.join(failed)}")

    # --- map ---------------------------------------------------------------

    def map_layer(self, raster: ee.Image, spec: MapLayerSpec, title: str, show: bool) -> Any:
        import folium

        map_id = raster.select(spec.band).getMapId({"min": spec.min, "max": spec.max, "palette": list(spec.palette)})
        return folium.raster_layers.TileLayer(
            tiles=map_id["tile_fetcher"].url_format,
            attr="Google Earth Engine",
            name=title,
            overlay=True,
            control=True,
            show=show,
            opacity=spec.opacity,
        )
