#!/usr/bin/env python3
"""piwo.config

Pipeline configuration: YAML loading plus the frozen specs every stage reads.

A pipeline YAML names the AOI, the point locations, the date series, the
image sources to composite, static layers, focal (neighbourhood) outputs,
point tables and image exports. See config/pipeline.yaml for a complete
example.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Every cross reference (table input, focal input, map layer) is checked at
  parse time so configuration errors surface before any backend query.
- Sources can extend an entry of the source registry (config/sources.yaml)
  with `use: <name>` and override individual keys.
- `year:` on focal groups, tables, images and map layers selects the first
  period that starts in that year. With sub-annual intervals the later
  periods of a year are only reachable through whole-series tables.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import shapely.geometry
from shapely.geometry.base import BaseGeometry
import yaml

from piwo.dates import Interval, Period, date_windows, to_timestamp
from piwo.errors import ConfigError
from piwo.indices import resolve_indices


BBox = Tuple[float, float, float, float]

REDUCERS = ("mean", "median", "first", "sum", "count", "min", "max", "stdDev", "mode")
FOCAL_REDUCERS = ("mean", "median", "sum", "count", "min", "max", "stdDev")
HOUSEKEEPING_COLUMNS = ("system:index", "system:time_start", "count", "histogram")


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises ConfigError on missing file or invalid format (non-mapping).
    """
    if not path.exists():
        raise ConfigError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ConfigError(f"Expected YAML mapping at {path}")
    return data


def load_sources_registry(path: Path) -> Dict[str, dict]:
    """Load the `sources:` mapping of a source registry YAML."""
    data = load_yaml(path)
    sources = data.get("sources")
    if not isinstance(sources, dict):
        raise ConfigError(f"{path} must have a top-level 'sources:' mapping.")
    return sources


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------

def coerce_bbox(x: Any) -> Optional[BBox]:
    """Try to coerce [xmin, ymin, xmax, ymax] into a bbox tuple.

    Returns None if input is invalid or missing.
    """
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 4:
        try:
            xmin, ymin, xmax, ymax = map(float, x)
        except (TypeError, ValueError):
            return None
        if xmin >= xmax or ymin >= ymax:
            return None
        return (xmin, ymin, xmax, ymax)
    return None


def format_bbox(b: Sequence[float], precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Specs
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class MaskSpec:
    """QA bit mask: a pixel is kept when every listed bit of `band` is 0."""

    band: str
    bits: Tuple[int, ...]

    @property
    def bitmask(self) -> int:
        value = 0
        for b in self.bits:
            value |= 1 << int(b)
        return value


@dataclass(frozen=True)
class ClassSpec:
    """Categorical band expanded into one 0/1 band `{band}_{label}` per class code.

    A focal mean over the indicator bands gives the share of each class inside
    the kernel (land-cover proportions).
    """

    band: str
    values: Tuple[Tuple[int, str], ...]

    @property
    def band_names(self) -> List[str]:
        return [f"{self.band}_{label}" for _, label in self.values]

    def expand(self, names: Sequence[str]) -> List[str]:
        """`names` with the class band replaced, in place, by its indicator bands."""
        out: List[str] = []
        for n in names:
            out.extend(self.band_names if n == self.band else [n])
        return out


@dataclass(frozen=True)
class SourceSpec:
    name: str
    collection: str
    bands: Dict[str, str]
    indices: Tuple[str, ...] = ()
    keep: Tuple[str, ...] = ()
    reducer: str = "median"
    max_cloud: Optional[float] = None
    cloud_property: str = "CLOUDY_PIXEL_PERCENTAGE"
    months: Optional[Tuple[int, int]] = None
    mask: Optional[MaskSpec] = None
    scale_factor: float = 1.0
    offset: float = 0.0
    window: Optional[Interval] = None
    prefix: str = ""
    ndrs: bool = False
    stress_threshold: Optional[float] = None
    classes: Optional[ClassSpec] = None

    @property
    def composite_bands(self) -> List[str]:
        """Bands of each per-period composite, before class expansion, NDRS and prefixing."""
        return list(self.keep) + list(self.indices)

    @property
    def output_bands(self) -> List[str]:
        names = self.classes.expand(self.composite_bands) if self.classes else self.composite_bands
        if self.ndrs:
            names.append("NDRS")
            if self.stress_threshold is not None:
                names.append("NDRS_stressed")
        return [f"{self.prefix}{b}" for b in names]


@dataclass(frozen=True)
class StaticLayerSpec:
    """A time-invariant layer (terrain, canopy) read from an asset or file."""

    name: str
    asset: str
    bands: Optional[Tuple[str, ...]] = None
    rename: Optional[Tuple[str, ...]] = None
    mosaic: bool = False
    terrain: Tuple[str, ...] = ()
    elevation_band: str = "elevation"
    flow_band: Optional[str] = None
    tpi_radius: float = 500.0
    classes: Optional[ClassSpec] = None


@dataclass(frozen=True)
class KernelSpec:
    radius: float
    units: str = "meters"
    shape: str = "circle"
    reducer: str = "mean"
    scale: Optional[float] = None

    @property
    def suffix(self) -> str:
        """Band-name suffix; mean is implicit, other reducers are spelled out."""
        r = f"{self.radius:g}"
        return r if self.reducer == "mean" else f"{self.reducer}_{r}"

    @property
    def export_scale(self) -> Optional[float]:
        if self.scale is not None:
            return float(self.scale)
        if self.units == "meters":
            return float(self.radius)
        return None


@dataclass(frozen=True)
class FocalSpec:
    name: str
    inputs: Tuple[str, ...]
    kernels: Tuple[KernelSpec, ...]
    target_scale: float
    combine: bool = False
    year: Optional[int] = None
    bands: Optional[Tuple[str, ...]] = None

    def output_names(self) -> List[str]:
        if self.combine:
            return [self.name]
        return [f"{self.name}_{k.suffix}" for k in self.kernels]


@dataclass(frozen=True)
class TableSpec:
    name: str
    input: str
    buffer: float = 0.0
    reducer: str = "first"
    scale: float = 30.0
    tile_scale: float = 1.0
    columns: Optional[Tuple[str, ...]] = None
    exclude: Tuple[str, ...] = HOUSEKEEPING_COLUMNS
    year: Optional[int] = None


@dataclass(frozen=True)
class ImageExportSpec:
    name: str
    input: str
    scale: Optional[float] = None
    year: Optional[int] = None
    max_pixels: float = 1e8
    crs: Optional[str] = None


@dataclass(frozen=True)
class PointsSpec:
    path: Path
    id_field: str = "location"
    x_field: str = "lon"
    y_field: str = "lat"
    crs: str = "EPSG:4326"
    layer: Optional[str] = None


@dataclass(frozen=True)
class CatalogEntry:
    """One local capture: a GeoTIFF with its acquisition date and metadata."""

    path: Path
    date: Any
    properties: Dict[str, Any] = field(default_factory=dict)
    bands: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class MapLayerSpec:
    input: str
    band: str
    year: Optional[int] = None
    min: float = 0.0
    max: float = 1.0
    palette: Tuple[str, ...] = ("white", "green")
    opacity: float = 1.0
    show: bool = True


@dataclass(frozen=True)
class OutputSpec:
    dir: Path = Path("data/processed")
    drive_folder: str = "piwo_exports"
    wait: bool = False


@dataclass(frozen=True)
class PipelineConfig:
    aoi: BaseGeometry
    start: Any
    end: Any
    interval: Interval
    backend: str = "local"
    project: Optional[str] = None
    crs: str = "EPSG:3348"
    points: Optional[PointsSpec] = None
    sources: Dict[str, SourceSpec] = field(default_factory=dict)
    static: Dict[str, StaticLayerSpec] = field(default_factory=dict)
    focal: Tuple[FocalSpec, ...] = ()
    tables: Tuple[TableSpec, ...] = ()
    images: Tuple[ImageExportSpec, ...] = ()
    catalog: Dict[str, Tuple[CatalogEntry, ...]] = field(default_factory=dict)
    map_layers: Tuple[MapLayerSpec, ...] = ()
    output: OutputSpec = field(default_factory=OutputSpec)

    def periods(self) -> List[Period]:
        return date_windows(self.start, self.end, self.interval.count, self.interval.unit)

    def is_series(self, name: str) -> bool:
        """True if `name` resolves to a per-period series rather than one raster."""
        if name in self.sources:
            return True
        for f in self.focal:
            if name in f.output_names():
                return f.year is None and any(self.is_series(i) for i in f.inputs)
        return False


# -----------------------------------------------------------------------------
# Parsing
# -----------------------------------------------------------------------------

def _require(d: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in d or d[key] is None:
        raise ConfigError(f"{where}: missing required key '{key}'")
    return d[key]


def _tuple(x: Any) -> Tuple:
    if x is None:
        return ()
    if isinstance(x, (list, tuple)):
        return tuple(x)
    return (x,)


def _check_reducer(reducer: str, allowed: Sequence[str], where: str) -> str:
    if reducer not in allowed:
        raise ConfigError(f"{where}: unknown reducer {reducer!r}; expected one of {list(allowed)}")
    return reducer


def parse_interval(x: Any, where: str = "interval") -> Interval:
    """Accept `12`, `"4 months"` or `{count: 4, unit: months}`."""
    if isinstance(x, dict):
        return Interval(int(_require(x, "count", where)), str(x.get("unit", "months")))
    if isinstance(x, int):
        return Interval(x, "months")
    if isinstance(x, str):
        parts = x.split()
        if len(parts) == 2:
            try:
                return Interval(int(parts[0]), parts[1])
            except ValueError as e:
                raise ConfigError(f"{where}: invalid interval {x!r}") from e
    raise ConfigError(f"{where}: invalid interval {x!r}")


def parse_aoi(d: Any, crs: str) -> BaseGeometry:
    """AOI polygon in EPSG:4326 from `bounds:` or a vector `path:`.

    `buffer:` (meters, applied in `crs`) and `envelope: true` grow the AOI
    to a buffered bounding box, which keeps focal kernels near the edge fed.
    """
    if not isinstance(d, dict):
        raise ConfigError("aoi: expected a mapping with 'bounds' or 'path'")

    bbox = coerce_bbox(d.get("bounds"))
    if bbox:
        geom = shapely.geometry.box(*bbox)
    elif d.get("path"):
        path = Path(d["path"])
        if not path.exists():
            raise ConfigError(f"AOI file not found: {path}")
        import geopandas as gpd
        from shapely.ops import unary_union

        gdf = gpd.read_file(path, layer=d.get("layer"))
        if gdf.empty:
            raise ConfigError(f"AOI file has no features: {path}")
        if gdf.crs is None:
            raise ConfigError(f"AOI file has no CRS: {path}")
        geom = unary_union(list(gdf.to_crs("EPSG:4326").geometry))
    else:
        raise ConfigError("aoi: needs 'bounds: [xmin, ymin, xmax, ymax]' or 'path'")

    buffer_m = float(d.get("buffer", 0) or 0)
    if buffer_m or d.get("envelope"):
        import geopandas as gpd

        gs = gpd.GeoSeries([geom], crs="EPSG:4326").to_crs(crs)
        if d.get("envelope"):
            gs = gs.envelope
        if buffer_m:
            gs = gs.buffer(buffer_m)
            if d.get("envelope"):
                gs = gs.envelope
        geom = gs.to_crs("EPSG:4326").iloc[0]
    return geom


def parse_classes(d: Any, where: str) -> ClassSpec:
    """`classes: {band: LC, values: {20: Water, 220: Broadleaf}}`."""
    if not isinstance(d, dict):
        raise ConfigError(f"{where}: 'classes' must be a mapping with 'band' and 'values'")
    values = _require(d, "values", where + ".classes")
    if not isinstance(values, dict) or not values:
        raise ConfigError(f"{where}.classes: 'values' must map class codes to labels")
    pairs = tuple((int(code), str(label)) for code, label in values.items())
    labels = [label for _, label in pairs]
    bad = [label for label in labels if not re.fullmatch(r"\w+", label)]
    if bad:
        raise ConfigError(f"{where}.classes: labels must be letters, digits or underscores (got {bad})")
    if len(set(labels)) != len(labels):
        raise ConfigError(f"{where}.classes: duplicate labels {labels}")
    return ClassSpec(band=str(_require(d, "band", where + ".classes")), values=pairs)


def parse_source(name: str, d: Mapping[str, Any], registry: Optional[Mapping[str, dict]] = None) -> SourceSpec:
    where = f"sources.{name}"
    if "use" in d:
        base = (registry or {}).get(d["use"])
        if not isinstance(base, dict):
            raise ConfigError(f"{where}: unknown registry source {d['use']!r}")
        d = {**base, **{k: v for k, v in d.items() if k != "use"}}

    bands = d.get("bands") or {}
    if not isinstance(bands, dict) or not bands:
        raise ConfigError(f"{where}: 'bands' must map aliases (NIR, RED, ...) to band names")
    bands = {str(k): str(v) for k, v in bands.items()}

    indices = tuple(str(i) for i in _tuple(d.get("indices")))
    resolve_indices(indices, bands)
    keep = tuple(str(k) for k in _tuple(d.get("keep")))
    unknown_keep = [k for k in keep if k not in bands]
    if unknown_keep:
        raise ConfigError(f"{where}: 'keep' names unmapped aliases {unknown_keep}")
    if not indices and not keep:
        raise ConfigError(f"{where}: nothing to composite; list 'indices' and/or 'keep'")

    months = d.get("months")
    if months is not None:
        months = tuple(int(m) for m in _tuple(months))
        if len(months) == 1:
            months = (months[0], months[0])
        if len(months) != 2 or not all(1 <= m <= 12 for m in months):
            raise ConfigError(f"{where}: 'months' must be [first, last] calendar months")

    mask = d.get("mask")
    if mask is not None:
        if not isinstance(mask, dict):
            raise ConfigError(f"{where}: 'mask' must be a mapping with 'band' and 'bits'")
        mask = MaskSpec(str(_require(mask, "band", where + ".mask")), tuple(int(b) for b in _tuple(mask.get("bits"))))

    ndrs = bool(d.get("ndrs", False))
    if ndrs and "DRS" not in indices:
        raise ConfigError(f"{where}: 'ndrs' needs DRS in 'indices'")
    threshold = d.get("stress_threshold")
    reducer = _check_reducer(str(d.get("reducer", "median")), REDUCERS, where)

    classes = parse_classes(d["classes"], where) if d.get("classes") else None
    if classes is not None:
        if classes.band not in keep:
            raise ConfigError(f"{where}: class band '{classes.band}' must be listed in 'keep'")
        if reducer not in ("first", "mode"):
            raise ConfigError(f"{where}: a categorical source needs reducer 'first' or 'mode' (got {reducer!r})")

    return SourceSpec(
        name=name,
        collection=str(_require(d, "collection", where)),
        bands=bands,
        indices=indices,
        keep=keep,
        reducer=reducer,
        max_cloud=float(d["max_cloud"]) if d.get("max_cloud") is not None else None,
        cloud_property=str(d.get("cloud_property", "CLOUDY_PIXEL_PERCENTAGE")),
        months=months,
        mask=mask,
        scale_factor=float(d.get("scale_factor", 1.0)),
        offset=float(d.get("offset", 0.0)),
        window=parse_interval(d["window"], where + ".window") if d.get("window") else None,
        prefix=str(d.get("prefix", "")),
        ndrs=ndrs,
        stress_threshold=float(threshold) if threshold is not None else None,
        classes=classes,
    )


def parse_static(name: str, d: Mapping[str, Any]) -> StaticLayerSpec:
    where = f"static.{name}"
    terrain = tuple(str(t) for t in _tuple(d.get("terrain")))
    unknown = [t for t in terrain if t not in ("slope", "aspect", "tpi", "hli", "twi")]
    if unknown:
        raise ConfigError(f"{where}: unknown terrain derivatives {unknown}")
    if "twi" in terrain and not d.get("flow_band"):
        raise ConfigError(f"{where}: 'twi' needs 'flow_band' (upslope area)")
    bands = tuple(d["bands"]) if d.get("bands") else None
    rename = tuple(d["rename"]) if d.get("rename") else None
    if rename is not None and (bands is None or len(rename) != len(bands)):
        raise ConfigError(f"{where}: 'rename' needs 'bands' of the same length")
    classes = parse_classes(d["classes"], where) if d.get("classes") else None
    if classes is not None and (rename or bands) and classes.band not in (rename or bands):
        raise ConfigError(f"{where}: class band '{classes.band}' is not one of {list(rename or bands)}")
    return StaticLayerSpec(
        name=name,
        asset=str(_require(d, "asset", where)),
        bands=bands,
        rename=rename,
        mosaic=bool(d.get("mosaic", False)),
        terrain=terrain,
        elevation_band=str(d.get("elevation_band", "elevation")),
        flow_band=d.get("flow_band"),
        tpi_radius=float(d.get("tpi_radius", 500.0)),
        classes=classes,
    )


def parse_kernel(d: Any, where: str) -> KernelSpec:
    if isinstance(d, (int, float)):
        d = {"radius": d}
    if not isinstance(d, dict):
        raise ConfigError(f"{where}: kernel must be a radius or a mapping")
    radius = float(_require(d, "radius", where))
    if radius <= 0:
        raise ConfigError(f"{where}: kernel radius must be positive")
    units = str(d.get("units", "meters"))
    if units not in ("meters", "pixels"):
        raise ConfigError(f"{where}: kernel units must be 'meters' or 'pixels'")
    shape = str(d.get("shape", "circle"))
    if shape not in ("circle", "square"):
        raise ConfigError(f"{where}: kernel shape must be 'circle' or 'square'")
    return KernelSpec(
        radius=radius,
        units=units,
        shape=shape,
        reducer=_check_reducer(str(d.get("reducer", "mean")), FOCAL_REDUCERS, where),
        scale=float(d["scale"]) if d.get("scale") is not None else None,
    )


def parse_focal(d: Mapping[str, Any], i: int) -> FocalSpec:
    where = f"focal[{i}]"
    name = str(_require(d, "name", where))
    inputs = tuple(str(x) for x in _tuple(d.get("inputs", d.get("input"))))
    if not inputs:
        raise ConfigError(f"{where}: needs 'input' or 'inputs'")
    kernels = tuple(parse_kernel(k, f"{where}.kernels[{j}]") for j, k in enumerate(_tuple(d.get("kernels"))))
    if not kernels:
        raise ConfigError(f"{where}: needs at least one kernel")
    suffixes = [k.suffix for k in kernels]
    if len(set(suffixes)) != len(suffixes):
        raise ConfigError(f"{where}: kernels produce duplicate band suffixes {suffixes}")
    return FocalSpec(
        name=name,
        inputs=inputs,
        kernels=kernels,
        target_scale=float(_require(d, "target_scale", where)),
        combine=bool(d.get("combine", False)),
        year=int(d["year"]) if d.get("year") is not None else None,
        bands=tuple(d["bands"]) if d.get("bands") else None,
    )


def parse_table(d: Mapping[str, Any], i: int) -> TableSpec:
    where = f"tables[{i}]"
    buffer = float(d.get("buffer", 0) or 0)
    if buffer < 0:
        raise ConfigError(f"{where}: buffer must be >= 0")
    default_reducer = "mean" if buffer > 0 else "first"
    columns = d.get("columns")
    return TableSpec(
        name=str(_require(d, "name", where)),
        input=str(_require(d, "input", where)),
        buffer=buffer,
        reducer=_check_reducer(str(d.get("reducer", default_reducer)), REDUCERS, where),
        scale=float(d.get("scale", 30)),
        tile_scale=float(d.get("tile_scale", 1)),
        columns=tuple(str(c) for c in columns) if columns else None,
        exclude=tuple(str(c) for c in _tuple(d["exclude"])) if "exclude" in d else HOUSEKEEPING_COLUMNS,
        year=int(d["year"]) if d.get("year") is not None else None,
    )


def parse_image(d: Mapping[str, Any], i: int) -> ImageExportSpec:
    where = f"images[{i}]"
    max_pixels = float(d.get("max_pixels", 1e8))
    if max_pixels <= 0:
        raise ConfigError(f"{where}: max_pixels must be positive")
    return ImageExportSpec(
        name=str(_require(d, "name", where)),
        input=str(_require(d, "input", where)),
        scale=float(d["scale"]) if d.get("scale") is not None else None,
        year=int(d["year"]) if d.get("year") is not None else None,
        max_pixels=max_pixels,
        crs=d.get("crs"),
    )


def parse_points(d: Mapping[str, Any]) -> PointsSpec:
    return PointsSpec(
        path=Path(_require(d, "path", "points")),
        id_field=str(d.get("id_field", "location")),
        x_field=str(d.get("x_field", "lon")),
        y_field=str(d.get("y_field", "lat")),
        crs=str(d.get("crs", "EPSG:4326")),
        layer=d.get("layer"),
    )


def parse_catalog(d: Any) -> Dict[str, Tuple[CatalogEntry, ...]]:
    if not d:
        return {}
    if not isinstance(d, dict):
        raise ConfigError("catalog: expected a mapping of collection -> list of captures")
    out: Dict[str, Tuple[CatalogEntry, ...]] = {}
    for collection, entries in d.items():
        parsed: List[CatalogEntry] = []
        for j, e in enumerate(_tuple(entries)):
            where = f"catalog.{collection}[{j}]"
            if not isinstance(e, dict):
                raise ConfigError(f"{where}: expected a mapping with 'path' and 'date'")
            parsed.append(
                CatalogEntry(
                    path=Path(_require(e, "path", where)),
                    date=to_timestamp(_require(e, "date", where)),
                    properties=dict(e.get("properties") or {}),
                    bands=tuple(e["bands"]) if e.get("bands") else None,
                )
            )
        out[str(collection)] = tuple(parsed)
    return out


def parse_pipeline(data: Mapping[str, Any], registry: Optional[Mapping[str, dict]] = None) -> PipelineConfig:
    """Build a PipelineConfig from a parsed pipeline YAML.

    Raises ConfigError on the first invalid or dangling entry.
    """
    backend = str(data.get("backend", "local"))
    if backend not in ("local", "earthengine"):
        raise ConfigError(f"backend must be 'local' or 'earthengine' (got {backend!r})")
    crs = str(data.get("crs", "EPSG:3348"))

    dates = _require(data, "dates", "pipeline")
    interval = parse_interval(dates.get("interval", 12), "dates.interval")
    if isinstance(dates.get("interval"), int) and dates.get("unit"):
        interval = Interval(int(dates["interval"]), str(dates["unit"]))
    start = to_timestamp(_require(dates, "start", "dates"))
    end = to_timestamp(_require(dates, "end", "dates"))
    if end < start:
        raise ConfigError(f"dates: end {end.date()} precedes start {start.date()}")

    sources = {str(k): parse_source(str(k), v or {}, registry) for k, v in (data.get("sources") or {}).items()}
    static = {str(k): parse_static(str(k), v or {}) for k, v in (data.get("static") or {}).items()}
    clash = set(sources) & set(static)
    if clash:
        raise ConfigError(f"Names used for both a source and a static layer: {sorted(clash)}")

    output = data.get("output") or {}
    cfg = PipelineConfig(
        aoi=parse_aoi(_require(data, "aoi", "pipeline"), crs),
        start=start,
        end=end,
        interval=interval,
        backend=backend,
        project=data.get("project"),
        crs=crs,
        points=parse_points(data["points"]) if data.get("points") else None,
        sources=sources,
        static=static,
        focal=tuple(parse_focal(f, i) for i, f in enumerate(_tuple(data.get("focal")))),
        tables=tuple(parse_table(t, i) for i, t in enumerate(_tuple(data.get("tables")))),
        images=tuple(parse_image(m, i) for i, m in enumerate(_tuple(data.get("images")))),
        catalog=parse_catalog(data.get("catalog")),
        map_layers=tuple(
            MapLayerSpec(
                input=str(_require(m, "input", f"map[{i}]")),
                band=str(_require(m, "band", f"map[{i}]")),
                year=int(m["year"]) if m.get("year") is not None else None,
                min=float(m.get("min", 0.0)),
                max=float(m.get("max", 1.0)),
                palette=tuple(m.get("palette") or ("white", "green")),
                opacity=float(m.get("opacity", 1.0)),
                show=bool(m.get("show", True)),
            )
            for i, m in enumerate(_tuple(data.get("map")))
        ),
        output=OutputSpec(
            dir=Path(output.get("dir", "data/processed")),
            drive_folder=str(output.get("drive_folder", "piwo_exports")),
            wait=bool(output.get("wait", False)),
        ),
    )
    _check_references(cfg)
    return cfg


def _check_references(cfg: PipelineConfig) -> None:
    """Fail fast on names that don't resolve to a source, static layer or focal output."""
    known: List[str] = list(cfg.sources) + list(cfg.static)
    for f in cfg.focal:
        missing = [i for i in f.inputs if i not in known]
        if missing:
            raise ConfigError(f"focal '{f.name}': unknown inputs {missing} (focal groups may only use earlier names)")
        for out in f.output_names():
            if out in known:
                raise ConfigError(f"focal '{f.name}': output name '{out}' is already used")
            known.append(out)

    for t in cfg.tables:
        if t.input not in known:
            raise ConfigError(f"table '{t.name}': unknown input '{t.input}'. Known: {known}")
    if cfg.tables and cfg.points is None:
        raise ConfigError("tables need a 'points:' section")
    names = [t.name for t in cfg.tables]
    if len(set(names)) != len(names):
        raise ConfigError(f"Duplicate table names: {names}")

    for m in cfg.images:
        if m.input not in known:
            raise ConfigError(f"image '{m.name}': unknown input '{m.input}'. Known: {known}")
        if m.scale is None and not _kernel_scale(cfg, m.input):
            raise ConfigError(f"image '{m.name}': needs an explicit 'scale'")
        if cfg.is_series(m.input) and m.year is None:
            raise ConfigError(f"image '{m.name}': input '{m.input}' is a time series; set 'year'")
    names = [m.name for m in cfg.images]
    if len(set(names)) != len(names):
        raise ConfigError(f"Duplicate image export names: {names}")

    for m in cfg.map_layers:
        if m.input not in known:
            raise ConfigError(f"map layer '{m.band}': unknown input '{m.input}'")

    for s in cfg.sources.values():
        if cfg.backend == "local" and s.collection not in cfg.catalog:
            raise ConfigError(f"source '{s.name}': local backend needs catalog entries for '{s.collection}'")


def _kernel_scale(cfg: PipelineConfig, name: str) -> Optional[float]:
    """Native scale of a per-kernel focal output, or the target scale of a combined one."""
    for f in cfg.focal:
        if f.combine and name == f.name:
            return f.target_scale
        for k in f.kernels:
            if not f.combine and name == f"{f.name}_{k.suffix}":
                return k.export_scale or f.target_scale
    return None


def export_scale(cfg: PipelineConfig, spec: ImageExportSpec) -> float:
    """Scale an image export runs at: its own setting, else its kernel's."""
    if spec.scale is not None:
        return spec.scale
    scale = _kernel_scale(cfg, spec.input)
    if scale is None:
        raise ConfigError(f"image '{spec.name}': needs an explicit 'scale'")
    return scale


def load_pipeline(path: Path, sources_yaml: Optional[Path] = None) -> PipelineConfig:
    """Load and validate a pipeline YAML (plus an optional source registry)."""
    registry = None
    if sources_yaml is not None and sources_yaml.exists():
        registry = load_sources_registry(sources_yaml)
    return parse_pipeline(load_yaml(path), registry)


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------

DEFAULT_SOURCES_YAML = Path("config/sources.yaml")
DEFAULT_PIPELINE_YAML = Path("config/pipeline.yaml")
