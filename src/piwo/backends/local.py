#!/usr/bin/env python3
"""piwo.backends.local

In-process raster backend over numpy arrays.

Captures are GeoTIFFs listed in the pipeline's `catalog:` section (one list
per collection id) or Capture objects handed in directly. Masked pixels are
NaN throughout. Neighbourhood reducers use scipy.ndimage; reprojection,
point sampling and GeoTIFF I/O use rasterio.

Assumptions:
- all captures of one collection share a grid (CRS, transform, shape)
- the raster CRS is projected in meters when kernels are given in meters

Required deps: numpy, scipy, rasterio, pandas, geopandas
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import geopandas as gpd
import rasterio
from rasterio.crs import CRS
from rasterio.features import geometry_mask
from rasterio.transform import Affine, rowcol
from rasterio.warp import Resampling, calculate_default_transform, reproject, transform_geom
from scipy import ndimage, stats
from shapely.geometry import Point, box, mapping, shape
from shapely.geometry.base import BaseGeometry

from piwo.backends.base import Backend
from piwo.config import CatalogEntry, KernelSpec, MapLayerSpec, OutputSpec, SourceSpec, StaticLayerSpec
from piwo.errors import BackendError, ConfigError, QuotaExceededError
from piwo.grid import aoi_grid
from piwo.indices import IndexSpec, evaluate

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Data model
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Raster:
    bands: Dict[str, np.ndarray]
    transform: Affine
    crs: str
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def names(self) -> List[str]:
        return list(self.bands)

    @property
    def shape(self) -> Tuple[int, int]:
        first = next(iter(self.bands.values()), None)
        if first is None:
            raise BackendError("Raster has no bands")
        return first.shape

    @property
    def res(self) -> float:
        return abs(self.transform.a)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        h, w = self.shape
        xmin, ymax = self.transform * (0, 0)
        xmax, ymin = self.transform * (w, h)
        return (min(xmin, xmax), min(ymin, ymax), max(xmin, xmax), max(ymin, ymax))

    def same_grid(self, other: "Raster") -> bool:
        return (
            CRS.from_user_input(self.crs) == CRS.from_user_input(other.crs)
            and self.shape == other.shape
            and self.transform.almost_equals(other.transform)
        )

    def empty_like(self, names: Sequence[str]) -> "Raster":
        """Fully masked raster on the same grid."""
        h, w = self.shape
        return Raster({n: np.full((h, w), np.nan) for n in names}, self.transform, self.crs)


@dataclass(frozen=True)
class Capture:
    timestamp: pd.Timestamp
    raster: Raster
    properties: Dict[str, Any] = field(default_factory=dict)

    def with_raster(self, raster: Raster) -> "Capture":
        return replace(self, raster=raster)


# -----------------------------------------------------------------------------
# GeoTIFF I/O
# -----------------------------------------------------------------------------

def read_geotiff(path: Path, bands: Optional[Sequence[str]] = None) -> Raster:
    """Read every band of a GeoTIFF as float64 with nodata -> NaN.

    Band names come from `bands`, else the file's band descriptions, else
    b1, b2, ...
    """
    if not Path(path).exists():
        raise ConfigError(f"Raster not found: {path}")
    with rasterio.open(path) as src:
        if src.crs is None:
            raise ConfigError(f"Raster has no CRS: {path}")
        data = src.read().astype("float64")
        if src.nodata is not None and not np.isnan(src.nodata):
            data[data == src.nodata] = np.nan
        names = list(bands) if bands else [d or f"b{i + 1}" for i, d in enumerate(src.descriptions)]
        if len(names) != src.count:
            raise ConfigError(f"{path}: {src.count} bands but {len(names)} names given")
        return Raster(
            bands={n: data[i] for i, n in enumerate(names)},
            transform=src.transform,
            crs=src.crs.to_string(),
            properties={},
        )


def write_geotiff(raster: Raster, path: Path) -> Path:
    """Write a float32 multiband GeoTIFF with band descriptions."""
    h, w = raster.shape
    profile = {
        "driver": "GTiff",
        "height": h,
        "width": w,
        "count": len(raster.bands),
        "dtype": "float32",
        "crs": raster.crs,
        "transform": raster.transform,
        "nodata": np.nan,
        "compress": "deflate",
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with rasterio.open(path, "w", **profile) as dst:
        for i, (name, arr) in enumerate(raster.bands.items(), start=1):
            dst.write(arr.astype("float32"), i)
            dst.set_band_description(i, name)
        dst.update_tags(**{str(k).replace(":", "_"): str(v) for k, v in raster.properties.items()})
    return path


# -----------------------------------------------------------------------------
# Reducers
# -----------------------------------------------------------------------------

def _first_valid(stack: np.ndarray, axis: int = 0) -> np.ndarray:
    valid = np.isfinite(stack)
    idx = np.argmax(valid, axis=axis)
    picked = np.take_along_axis(stack, np.expand_dims(idx, axis), axis=axis).squeeze(axis)
    return np.where(valid.any(axis=axis), picked, np.nan)


def reduce_values(stack: np.ndarray, reducer: str, axis: int = 0) -> np.ndarray:
    """NaN-aware reduction along `axis`; all-masked cells reduce to NaN (count to 0)."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        n = np.isfinite(stack).sum(axis=axis)
        if reducer == "count":
            return n.astype("float64")
        if reducer == "first":
            return _first_valid(stack, axis)
        if reducer == "median":
            out = np.nanmedian(stack, axis=axis)
        elif reducer == "mean":
            out = np.nanmean(stack, axis=axis)
        elif reducer == "sum":
            out = np.nansum(stack, axis=axis)
        elif reducer == "min":
            out = np.nanmin(stack, axis=axis)
        elif reducer == "max":
            out = np.nanmax(stack, axis=axis)
        elif reducer == "stdDev":
            out = np.nanstd(stack, axis=axis)
        elif reducer == "mode":
            # all-masked cells get a placeholder; they are masked again below
            filled = np.where(np.expand_dims(n > 0, axis), stack, 0.0)
            out = stats.mode(filled, axis=axis, nan_policy="omit", keepdims=False).mode
        else:
            raise BackendError(f"Reducer {reducer!r} is not supported by the local backend")
    return np.where(n > 0, out, np.nan)


def kernel_footprint(kernel: KernelSpec, res: float) -> np.ndarray:
    """Boolean footprint; circle keeps pixels whose centre is within the radius."""
    r = kernel.radius / res if kernel.units == "meters" else kernel.radius
    n = int(np.floor(r + 1e-9))
    yy, xx = np.mgrid[-n : n + 1, -n : n + 1]
    if kernel.shape == "square":
        return np.ones(yy.shape, dtype=bool)
    return (xx**2 + yy**2) <= r**2 + 1e-9


def focal_array(a: np.ndarray, footprint: np.ndarray, reducer: str) -> np.ndarray:
    valid = np.isfinite(a)
    with warnings.catch_warnings(), np.errstate(divide="ignore", invalid="ignore"):
        warnings.simplefilter("ignore", RuntimeWarning)
        if reducer in ("mean", "sum", "count", "stdDev"):
            fp = footprint.astype("float64")
            filled = np.where(valid, a, 0.0)
            n = ndimage.convolve(valid.astype("float64"), fp, mode="constant", cval=0.0)
            s = ndimage.convolve(filled, fp, mode="constant", cval=0.0)
            if reducer == "count":
                out = n
            elif reducer == "sum":
                out = np.where(n > 0, s, np.nan)
            elif reducer == "mean":
                out = np.where(n > 0, s / n, np.nan)
            else:
                s2 = ndimage.convolve(filled**2, fp, mode="constant", cval=0.0)
                var = np.where(n > 0, s2 / n - (s / n) ** 2, np.nan)
                out = np.sqrt(np.clip(var, 0.0, None))
        else:
            funcs = {"median": np.nanmedian, "min": np.nanmin, "max": np.nanmax}
            if reducer not in funcs:
                raise BackendError(f"Focal reducer {reducer!r} is not supported by the local backend")
            out = ndimage.generic_filter(a, funcs[reducer], footprint=footprint, mode="constant", cval=np.nan)
    return np.where(valid, out, np.nan)


# -----------------------------------------------------------------------------
# Backend
# -----------------------------------------------------------------------------

class LocalBackend(Backend):
    name = "local"

    def __init__(self, captures: Optional[Mapping[str, Iterable[Capture]]] = None):
        self._captures: Dict[str, List[Capture]] = {
            k: sorted(v, key=lambda c: c.timestamp) for k, v in (captures or {}).items()
        }

    @classmethod
    def from_catalog(cls, catalog: Mapping[str, Sequence[CatalogEntry]]) -> "LocalBackend":
        captures: Dict[str, List[Capture]] = {}
        for collection, entries in catalog.items():
            captures[collection] = [
                Capture(pd.Timestamp(e.date), read_geotiff(e.path, e.bands), dict(e.properties)) for e in entries
            ]
            logger.debug(f"Loaded {len(entries)} captures for {collection}")
        return cls(captures)

    # --- helpers -----------------------------------------------------------

    def _aoi_in(self, aoi: BaseGeometry, crs: str) -> BaseGeometry:
        return shape(transform_geom("EPSG:4326", crs, mapping(aoi)))

    def _clip(self, raster: Raster, aoi: BaseGeometry) -> Raster:
        outside = geometry_mask([mapping(self._aoi_in(aoi, raster.crs))], raster.shape, raster.transform)
        bands = {n: np.where(outside, np.nan, a) for n, a in raster.bands.items()}
        return replace(raster, bands=bands)

    def _template(self, collection: str) -> Raster:
        captures = self._captures.get(collection)
        if not captures:
            raise BackendError(f"No local captures for collection '{collection}'; can't infer its grid")
        return captures[0].raster

    # --- collections -------------------------------------------------------

    def query(self, source: SourceSpec, start: Any, end: Any, aoi: BaseGeometry) -> Dict[str, Any]:
        start, end = pd.Timestamp(start), pd.Timestamp(end)
        template = self._template(source.collection)
        region = self._aoi_in(aoi, template.crs)

        picked: List[Capture] = []
        for c in self._captures[source.collection]:
            if not (start <= c.timestamp < end):
                continue
            if source.months is not None:
                m0, m1 = source.months
                m = c.timestamp.month
                # ranges like [11, 2] wrap over the new year
                in_range = m0 <= m <= m1 if m0 <= m1 else (m >= m0 or m <= m1)
                if not in_range:
                    continue
            if source.max_cloud is not None:
                cloud = c.properties.get(source.cloud_property)
                if cloud is None or not float(cloud) < source.max_cloud:
                    continue
            if not box(*c.raster.bounds).intersects(region):
                continue
            picked.append(c)
        return {"collection": source.collection, "captures": picked}

    def collection_size(self, collection: Dict[str, Any]) -> Optional[int]:
        return len(collection["captures"])

    def mask_and_scale(self, collection: Dict[str, Any], source: SourceSpec) -> Dict[str, Any]:
        spectral = sorted(set(source.bands.values()))
        out: List[Capture] = []
        for c in collection["captures"]:
            r = c.raster
            missing = [b for b in spectral if b not in r.bands]
            if missing:
                raise BackendError(f"Capture {c.timestamp.date()} of {source.collection} lacks bands {missing}")
            keep = np.ones(r.shape, dtype=bool)
            if source.mask is not None:
                qa = r.bands.get(source.mask.band)
                if qa is None:
                    raise BackendError(f"Capture {c.timestamp.date()} lacks QA band {source.mask.band}")
                qa_valid = np.isfinite(qa)
                bits = np.where(qa_valid, qa, 0).astype("int64")
                keep = qa_valid & ((bits & source.mask.bitmask) == 0)
            bands = {b: np.where(keep, r.bands[b] * source.scale_factor + source.offset, np.nan) for b in spectral}
            out.append(c.with_raster(replace(r, bands=bands)))
        return {**collection, "captures": out}

    def add_indices(self, collection: Dict[str, Any], source: SourceSpec, indices: Sequence[IndexSpec]) -> Dict[str, Any]:
        out: List[Capture] = []
        for c in collection["captures"]:
            bands = dict(c.raster.bands)
            for alias in source.keep:
                bands[alias] = bands[source.bands[alias]].copy()
            for spec in indices:
                arrays = {a: c.raster.bands[source.bands[a]] for a in spec.aliases}
                bands[spec.name] = evaluate(spec.expression, arrays)
            out.append(c.with_raster(replace(c.raster, bands=bands)))
        return {**collection, "captures": out}

    def reduce_collection(self, collection: Dict[str, Any], source: SourceSpec, bands: Sequence[str], aoi: BaseGeometry) -> Raster:
        captures = collection["captures"]
        template = self._template(collection["collection"])
        if not captures:
            return self._clip(template.empty_like(bands), aoi)
        for c in captures:
            if not c.raster.same_grid(template):
                raise BackendError(f"Captures of {collection['collection']} are not on one grid ({c.timestamp.date()})")
        reduced = {b: reduce_values(np.stack([c.raster.bands[b] for c in captures]), source.reducer) for b in bands}
        return self._clip(Raster(reduced, template.transform, template.crs), aoi)

    # --- rasters -----------------------------------------------------------

    def set_properties(self, raster: Raster, properties: Mapping[str, Any]) -> Raster:
        return replace(raster, properties={**raster.properties, **properties})

    def band_names(self, raster: Raster) -> List[str]:
        return raster.names

    def select(self, raster: Raster, bands: Sequence[str]) -> Raster:
        missing = [b for b in bands if b not in raster.bands]
        if missing:
            raise ConfigError(f"Bands {missing} not found; available: {raster.names}")
        return replace(raster, bands={b: raster.bands[b] for b in bands})

    def rename(self, raster: Raster, names: Sequence[str]) -> Raster:
        if len(names) != len(raster.bands):
            raise BackendError(f"Can't rename {len(raster.bands)} bands to {len(names)} names")
        return replace(raster, bands=dict(zip(names, raster.bands.values())))

    def add_expression(self, raster: Raster, name: str, expression: str, variables: Mapping[str, str]) -> Raster:
        arrays = {k: raster.bands[b] for k, b in variables.items()}
        out = evaluate(expression, arrays)
        masked = np.zeros(raster.shape, dtype=bool)
        for a in arrays.values():
            masked |= ~np.isfinite(a)
        bands = dict(raster.bands)
        bands[name] = np.where(masked, np.nan, out)
        return replace(raster, bands=bands)

    def normalize_band(self, raster: Raster, band: str, name: str, aoi: BaseGeometry, scale: float) -> Raster:
        a = raster.bands[band]
        with warnings.catch_warnings(), np.errstate(divide="ignore", invalid="ignore"):
            warnings.simplefilter("ignore", RuntimeWarning)
            lo, hi = np.nanmin(a), np.nanmax(a)
            out = (a - lo) / (hi - lo)
        out[~np.isfinite(out)] = np.nan
        bands = dict(raster.bands)
        bands[name] = out
        return replace(raster, bands=bands)

    def load_static(self, spec: StaticLayerSpec, aoi: BaseGeometry) -> Raster:
        raster = read_geotiff(Path(spec.asset))
        if spec.bands:
            raster = self.select(raster, spec.bands)
        if spec.rename:
            raster = self.rename(raster, spec.rename)
        return self._clip(raster, aoi)

    def terrain(self, raster: Raster, band: str) -> Raster:
        z = raster.bands[band]
        # rows run north to south, so the northward gradient is minus the row gradient
        dz_drow, dz_dcol = np.gradient(z, abs(raster.transform.e), abs(raster.transform.a))
        dz_dx, dz_dy = dz_dcol, -dz_drow
        slope = np.degrees(np.arctan(np.hypot(dz_dx, dz_dy)))
        aspect = np.mod(np.degrees(np.arctan2(-dz_dx, -dz_dy)), 360.0)
        bands = dict(raster.bands)
        bands["slope"] = slope
        bands["aspect"] = aspect
        return replace(raster, bands=bands)

    def focal(self, raster: Raster, kernel: KernelSpec) -> Raster:
        footprint = kernel_footprint(kernel, raster.res)
        bands = {n: focal_array(a, footprint, kernel.reducer) for n, a in raster.bands.items()}
        return replace(raster, bands=bands)

    def reproject(self, raster: Raster, crs: str, scale: float, aoi: BaseGeometry, resampling: Resampling = Resampling.nearest) -> Raster:
        transform, width, height = aoi_grid(aoi, crs, scale)
        target = Raster({}, transform, crs, raster.properties)
        if (
            CRS.from_user_input(raster.crs) == CRS.from_user_input(crs)
            and raster.shape == (height, width)
            and raster.transform.almost_equals(transform)
        ):
            return raster
        bands = {}
        for n, a in raster.bands.items():
            dst = np.full((height, width), np.nan)
            reproject(
                source=a,
                destination=dst,
                src_transform=raster.transform,
                src_crs=raster.crs,
                src_nodata=np.nan,
                dst_transform=transform,
                dst_crs=crs,
                dst_nodata=np.nan,
                resampling=resampling,
            )
            bands[n] = dst
        return replace(target, bands=bands)

    def stack(self, rasters: Sequence[Raster]) -> Raster:
        if not rasters:
            raise BackendError("Nothing to stack")
        first = rasters[0]
        bands: Dict[str, np.ndarray] = {}
        for r in rasters:
            if not r.same_grid(first):
                raise BackendError("Can't stack rasters on different grids; reproject them first")
            dupes = [n for n in r.bands if n in bands]
            if dupes:
                raise ConfigError(f"Duplicate band names when stacking: {dupes}")
            bands.update(r.bands)
        return replace(first, bands=bands)

    # --- tables ------------------------------------------------------------

    def sample(
        self,
        raster: Raster,
        points: gpd.GeoDataFrame,
        *,
        id_field: str,
        reducer: str,
        crs: str,
        scale: float,
        tile_scale: float,
        aoi: BaseGeometry,
        properties: Sequence[str],
    ) -> pd.DataFrame:
        if CRS.from_user_input(raster.crs) != CRS.from_user_input(crs) or not np.isclose(raster.res, scale):
            raster = self.reproject(raster, crs, scale, aoi)

        sites = points.to_crs(raster.crs)
        h, w = raster.shape
        attrs = [c for c in sites.columns if c != sites.geometry.name]
        stack = np.stack(list(raster.bands.values()))

        rows = []
        for _, site in sites.iterrows():
            geom = site.geometry
            if isinstance(geom, Point):
                r, c = rowcol(raster.transform, geom.x, geom.y)
                if 0 <= r < h and 0 <= c < w:
                    values = stack[:, r : r + 1, c]
                else:
                    values = np.full((stack.shape[0], 1), np.nan)
            else:
                inside = geometry_mask([mapping(geom)], (h, w), raster.transform, invert=True)
                if not inside.any():
                    inside = geometry_mask([mapping(geom)], (h, w), raster.transform, invert=True, all_touched=True)
                values = stack[:, inside]
                if values.shape[1] == 0:
                    values = np.full((stack.shape[0], 1), np.nan)
            reduced = reduce_values(values, reducer, axis=1)

            row = {a: site[a] for a in attrs}
            row.update({n: float(v) for n, v in zip(raster.names, reduced)})
            row.update({p: raster.properties[p] for p in properties if p in raster.properties})
            rows.append(row)

        columns = attrs + raster.names + [p for p in properties if p in raster.properties]
        return pd.DataFrame(rows, columns=columns)

    def concat_tables(self, tables: Sequence[pd.DataFrame]) -> pd.DataFrame:
        if not tables:
            return pd.DataFrame()
        return pd.concat(tables, ignore_index=True)

    def table_columns(self, table: pd.DataFrame) -> List[str]:
        return [str(c) for c in table.columns]

    # --- exports -----------------------------------------------------------

    def export_table(self, table: pd.DataFrame, columns: Sequence[str], name: str, output: OutputSpec) -> Path:
        path = output.dir / f"{name}.csv"
        path.parent.mkdir(parents=True, exist_ok=True)
        table.loc[:, list(columns)].to_csv(path, index=False)
        logger.info(f"Wrote {len(table)} rows -> {path}")
        return path

    def export_image(
        self,
        raster: Raster,
        name: str,
        *,
        crs: str,
        scale: float,
        aoi: BaseGeometry,
        max_pixels: float,
        output: OutputSpec,
    ) -> Path:
        _, width, height = aoi_grid(aoi, crs, scale)
        if width * height > max_pixels:
            raise QuotaExceededError(
                f"Export '{name}' needs {width * height} pixels at scale {scale} (max_pixels={max_pixels:g}). "
                "Increase the scale or max_pixels."
            )
        out = self.reproject(raster, crs, scale, aoi)
        path = write_geotiff(out, output.dir / f"{name}.tif")
        logger.info(f"Wrote {len(out.bands)}-band raster {width}x{height} -> {path}")
        return path

    # --- map ---------------------------------------------------------------

    def map_layer(self, raster: Raster, spec: MapLayerSpec, title: str, show: bool) -> Any:
        import branca.colormap
        import folium

        a = raster.bands[spec.band]
        h, w = a.shape
        transform, width, height = calculate_default_transform(raster.crs, "EPSG:4326", w, h, *raster.bounds)
        ll = np.full((height, width), np.nan)
        reproject(
            source=a,
            destination=ll,
            src_transform=raster.transform,
            src_crs=raster.crs,
            src_nodata=np.nan,
            dst_transform=transform,
            dst_crs="EPSG:4326",
            dst_nodata=np.nan,
            resampling=Resampling.nearest,
        )

        cmap = branca.colormap.LinearColormap(list(spec.palette), vmin=spec.min, vmax=spec.max)
        rgba = np.zeros((height, width, 4), dtype="uint8")
        valid = np.isfinite(ll)
        if valid.any():
            clipped = np.clip(ll[valid], spec.min, spec.max)
            colors = np.array([cmap.rgba_floats_tuple(v) for v in clipped])
            rgba[valid] = (colors * 255).round().astype("uint8")

        west, north = transform * (0, 0)
        east, south = transform * (width, height)
        return folium.raster_layers.ImageOverlay(
            image=rgba,
            bounds=[[south, west], [north, east]],
            name=title,
            opacity=spec.opacity,
            show=show,
        )
