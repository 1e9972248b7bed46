#!/usr/bin/env python3
"""piwo.pipeline

Two-phase pipeline: build a plan from the config, then execute it on a
backend.

build_plan() validates everything that can be checked without touching a
backend (dates, names, pixel budgets of image exports) and returns an
immutable Plan listing the steps in execution order:

  series  → one composite per period for each image source
  static  → static layers with their terrain derivatives
  focal   → neighbourhood outputs, per kernel or combined
  table   → point samples, one CSV per table
  image   → multiband raster exports

Plan.execute() materializes the steps in that order. On Earth Engine this
only assembles graphs and starts export tasks; the local backend computes
and writes files immediately.

Layers are addressed by name (source, static layer or focal output). A
series layer holds one raster per period; any other layer holds one raster.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import geopandas as gpd

from piwo.aggregate import class_indicators, combine_focal
from piwo.backends.base import Backend
from piwo.config import FocalSpec, PipelineConfig, export_scale, format_bbox
from piwo.dates import Period
from piwo.errors import ConfigError
from piwo.export import check_pixel_budget, export_image, export_table
from piwo.extract import extract, load_points
from piwo.series import build_series
from piwo.terrain import add_terrain

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------

@dataclass
class Layer:
    name: str
    rasters: List[Any]
    periods: List[Optional[Period]]

    @property
    def is_series(self) -> bool:
        return any(p is not None for p in self.periods)

    def pick(self, year: Optional[int] = None) -> Any:
        """The raster for `year`, or the only raster.

        With sub-annual periods `year` selects the first period of that year.
        Use at() to address one period exactly.
        """
        if not self.is_series:
            return self.rasters[0]
        if year is None:
            if len(self.rasters) == 1:
                return self.rasters[0]
            raise ConfigError(f"'{self.name}' is a time series; pick a year")
        for raster, period in zip(self.rasters, self.periods):
            if period is not None and period.year == year:
                return raster
        years = sorted({p.year for p in self.periods if p is not None})
        raise ConfigError(f"'{self.name}' has no period in {year}; years: {years}")

    def at(self, period: Period) -> Any:
        """The raster composited over `period`; static layers return their only raster."""
        if not self.is_series:
            return self.rasters[0]
        try:
            return self.rasters[self.periods.index(period)]
        except ValueError:
            raise ConfigError(f"'{self.name}' has no period {period.date}") from None


@dataclass
class PipelineResult:
    periods: List[Period]
    layers: Dict[str, Layer] = field(default_factory=dict)
    tables: Dict[str, Any] = field(default_factory=dict)
    exports: List[Any] = field(default_factory=list)
    points: Optional[gpd.GeoDataFrame] = None

    def pick(self, name: str, year: Optional[int] = None) -> Any:
        if name not in self.layers:
            raise ConfigError(f"Unknown layer '{name}'. Known: {list(self.layers)}")
        return self.layers[name].pick(year)


# -----------------------------------------------------------------------------
# Plan
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    kind: str
    name: str
    detail: str = ""


@dataclass(frozen=True)
class Plan:
    config: PipelineConfig
    periods: Tuple[Period, ...]
    steps: Tuple[Step, ...]

    def describe(self) -> str:
        cfg = self.config
        lines = [
            f"backend: {cfg.backend}",
            f"aoi: {format_bbox(cfg.aoi.bounds)}  crs: {cfg.crs}",
            f"periods: {len(self.periods)} x {cfg.interval}"
            + (f" ({self.periods[0].date} .. {self.periods[-1].date})" if self.periods else ""),
        ]
        for step in self.steps:
            lines.append(f"  [{step.kind}] {step.name}" + (f": {step.detail}" if step.detail else ""))
        return "\n".join(lines)

    def execute(self, backend: Backend, export: bool = True) -> PipelineResult:
        """Run every step on `backend`. With export=False nothing is written or started."""
        cfg = self.config
        result = PipelineResult(periods=list(self.periods))
        if cfg.points is not None:
            result.points = load_points(cfg.points)

        for step in self.steps:
            logger.info(f"[{step.kind}] {step.name}")
            if step.kind == "series":
                self._run_series(backend, step.name, result)
            elif step.kind == "static":
                self._run_static(backend, step.name, result)
            elif step.kind == "focal":
                self._run_focal(backend, _focal_spec(cfg, step.name), result)
            elif step.kind == "table":
                self._run_table(backend, step.name, result, export)
            elif step.kind == "image" and export:
                self._run_image(backend, step.name, result)

        if export:
            backend.finish(result.exports, cfg.output)
        return result

    # --- steps ---------------------------------------------------------------

    def _run_series(self, backend: Backend, name: str, result: PipelineResult) -> None:
        cfg = self.config
        source = cfg.sources[name]
        scales = [t.scale for t in cfg.tables if t.input == name]
        rasters = build_series(backend, source, self.periods, cfg.aoi, ndrs_scale=min(scales) if scales else 30.0)
        result.layers[name] = Layer(name, rasters, list(self.periods))

    def _run_static(self, backend: Backend, name: str, result: PipelineResult) -> None:
        cfg = self.config
        spec = cfg.static[name]
        raster = backend.load_static(spec, cfg.aoi)
        raster = add_terrain(backend, raster, spec, cfg.aoi)
        if spec.classes is not None:
            raster = class_indicators(backend, raster, spec.classes)
        raster = backend.set_properties(raster, {"source": name})
        result.layers[name] = Layer(name, [raster], [None])

    def _run_focal(self, backend: Backend, spec: FocalSpec, result: PipelineResult) -> None:
        cfg = self.config
        inputs = [result.layers[i] for i in spec.inputs]

        # one slot per period when any input is a series, else a single slot
        slots: List[Optional[Period]] = [None]
        if spec.year is None and any(layer.is_series for layer in inputs):
            slots = list(self.periods)

        outputs: Dict[str, Layer] = {n: Layer(n, [], []) for n in spec.output_names()}
        for period in slots:
            if period is None:
                rasters = [layer.pick(spec.year) for layer in inputs]
                slot_period = _period_for_year(self.periods, spec.year)
            else:
                rasters = [layer.at(period) for layer in inputs]
                slot_period = period
            rasters = self._select_bands(backend, spec, rasters)
            props = {**(slot_period.properties() if slot_period else {}), "source": spec.name}

            if spec.combine:
                combined = combine_focal(
                    backend, rasters, spec.kernels, crs=cfg.crs, target_scale=spec.target_scale, aoi=cfg.aoi, properties=props
                )
                outputs[spec.name].rasters.append(combined)
                outputs[spec.name].periods.append(slot_period)
                continue
            for kernel in spec.kernels:
                out = combine_focal(
                    backend,
                    rasters,
                    [kernel],
                    crs=cfg.crs,
                    target_scale=kernel.export_scale or spec.target_scale,
                    aoi=cfg.aoi,
                    properties=props,
                )
                layer = outputs[f"{spec.name}_{kernel.suffix}"]
                layer.rasters.append(out)
                layer.periods.append(slot_period)
        result.layers.update(outputs)

    def _select_bands(self, backend: Backend, spec: FocalSpec, rasters: Sequence[Any]) -> List[Any]:
        if not spec.bands:
            return list(rasters)
        selected, found = [], set()
        for raster in rasters:
            names = [b for b in backend.band_names(raster) if b in spec.bands]
            found.update(names)
            if names:
                selected.append(backend.select(raster, names))
        missing = [b for b in spec.bands if b not in found]
        if missing:
            raise ConfigError(f"focal '{spec.name}': bands {missing} not found in inputs {list(spec.inputs)}")
        return selected

    def _run_table(self, backend: Backend, name: str, result: PipelineResult, export: bool) -> None:
        cfg = self.config
        spec = next(t for t in cfg.tables if t.name == name)
        layer = result.layers[spec.input]
        rasters = [layer.pick(spec.year)] if spec.year is not None else list(layer.rasters)
        table = extract(
            backend, rasters, result.points, spec, id_field=cfg.points.id_field, crs=cfg.crs, aoi=cfg.aoi
        )
        result.tables[name] = table
        if export:
            result.exports.append(export_table(backend, table, spec, cfg.points.id_field, cfg.output))

    def _run_image(self, backend: Backend, name: str, result: PipelineResult) -> None:
        cfg = self.config
        spec = next(m for m in cfg.images if m.name == name)
        raster = result.pick(spec.input, spec.year)
        result.exports.append(
            export_image(backend, raster, spec, crs=cfg.crs, scale=export_scale(cfg, spec), aoi=cfg.aoi, output=cfg.output)
        )


def _focal_spec(cfg: PipelineConfig, name: str) -> FocalSpec:
    return next(f for f in cfg.focal if f.name == name)


def _period_for_year(periods: Sequence[Period], year: Optional[int]) -> Optional[Period]:
    if year is None:
        return None
    return next((p for p in periods if p.year == year), None)


# -----------------------------------------------------------------------------
# Entry points
# -----------------------------------------------------------------------------

def build_plan(cfg: PipelineConfig) -> Plan:
    """Validate `cfg` and list the steps to run. Raises before any backend work."""
    periods = tuple(cfg.periods())
    if not periods:
        raise ConfigError("The date range yields no periods")
    steps: List[Step] = []

    for name, source in cfg.sources.items():
        window = source.window or cfg.interval
        steps.append(Step("series", name, f"{source.collection} {source.reducer} over {window} -> {', '.join(source.output_bands)}"))
    for name, spec in cfg.static.items():
        extra = f" + {', '.join(spec.terrain)}" if spec.terrain else ""
        steps.append(Step("static", name, f"{spec.asset}{extra}"))
    for f in cfg.focal:
        radii = ", ".join(k.suffix for k in f.kernels)
        mode = "combined" if f.combine else "per kernel"
        steps.append(Step("focal", f.name, f"{'+'.join(f.inputs)} kernels [{radii}] {mode} at {f.target_scale:g} m"))
    for t in cfg.tables:
        n = 1 if t.year is not None or not cfg.is_series(t.input) else len(periods)
        steps.append(Step("table", t.name, f"{t.input} x {n} raster(s), {t.reducer}, buffer {t.buffer:g} m, scale {t.scale:g}"))
    for m in cfg.images:
        scale = export_scale(cfg, m)
        crs = m.crs or cfg.crs
        n = check_pixel_budget(cfg.aoi, crs, scale, m.max_pixels)
        year = f" {m.year}" if m.year is not None else ""
        steps.append(Step("image", m.name, f"{m.input}{year} at {scale:g} m in {crs} ({n:,} px)"))
        if m.year is not None and cfg.is_series(m.input) and _period_for_year(periods, m.year) is None:
            raise ConfigError(f"image '{m.name}': no period in {m.year}")

    return Plan(config=cfg, periods=periods, steps=tuple(steps))


def run_pipeline(cfg: PipelineConfig, backend: Optional[Backend] = None, export: bool = True) -> PipelineResult:
    """build_plan + execute, creating the configured backend if none is given."""
    plan = build_plan(cfg)
    if backend is None:
        from piwo.backends import get_backend

        backend = get_backend(cfg)
    logger.info(f"Running {len(plan.steps)} steps on the {backend.name} backend")
    return plan.execute(backend, export=export)
