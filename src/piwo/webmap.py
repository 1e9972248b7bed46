#!/usr/bin/env python3
"""piwo.webmap

Interactive web map of pipeline outputs.

The map is a pure function of a LayerState (which layers are visible):
every configured layer is always added, visible ones with show=True and the
rest with show=False, and a LayerControl gives each one a checkbox. A legend
(branca colormap) is drawn per raster layer. Toggling a layer returns a new
state; re-rendering gives the new map.

Example:
  state = LayerState.from_specs(cfg.map_layers)
  m = build_map(backend, result, cfg, state.toggle("ndvi 2020"))
  m.save("map.html")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, FrozenSet, Iterable, List, Optional, Sequence, Tuple

import branca.colormap
import folium
import geopandas as gpd
from shapely.geometry.base import BaseGeometry

from piwo.backends.base import Backend
from piwo.config import MapLayerSpec, PipelineConfig
from piwo.errors import ConfigError

POINTS_LAYER = "Survey points"


def layer_title(spec: MapLayerSpec) -> str:
    year = f" {spec.year}" if spec.year is not None else ""
    return f"{spec.input} {spec.band}{year}"


# -----------------------------------------------------------------------------
# Visibility state
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class LayerState:
    names: Tuple[str, ...]
    visible: FrozenSet[str]

    @classmethod
    def from_specs(cls, specs: Iterable[MapLayerSpec], points: bool = True) -> "LayerState":
        specs = list(specs)
        names = [layer_title(s) for s in specs]
        visible = {layer_title(s) for s in specs if s.show}
        if points:
            names.append(POINTS_LAYER)
            visible.add(POINTS_LAYER)
        return cls(tuple(names), frozenset(visible))

    def _check(self, name: str) -> None:
        if name not in self.names:
            raise ConfigError(f"Unknown map layer '{name}'. Known: {list(self.names)}")

    def is_visible(self, name: str) -> bool:
        return name in self.visible

    def show(self, name: str) -> "LayerState":
        self._check(name)
        return LayerState(self.names, self.visible | {name})

    def hide(self, name: str) -> "LayerState":
        self._check(name)
        return LayerState(self.names, self.visible - {name})

    def toggle(self, name: str) -> "LayerState":
        return self.hide(name) if self.is_visible(name) else self.show(name)


# -----------------------------------------------------------------------------
# Rendering
# -----------------------------------------------------------------------------

def legend(spec: MapLayerSpec, title: str) -> branca.colormap.LinearColormap:
    return branca.colormap.LinearColormap(list(spec.palette), vmin=spec.min, vmax=spec.max, caption=title)


def render_map(
    backend: Backend,
    layers: Sequence[Tuple[MapLayerSpec, Any]],
    state: LayerState,
    aoi: BaseGeometry,
    points: Optional[gpd.GeoDataFrame] = None,
    id_field: Optional[str] = None,
) -> folium.Map:
    """folium map of (spec, raster) pairs with visibility taken from `state`."""
    xmin, ymin, xmax, ymax = aoi.bounds
    m = folium.Map(location=[(ymin + ymax) / 2, (xmin + xmax) / 2], zoom_start=8, tiles="OpenStreetMap")

    for spec, raster in layers:
        title = layer_title(spec)
        backend.map_layer(raster, spec, title, show=state.is_visible(title)).add_to(m)
        legend(spec, title).add_to(m)

    if points is not None and POINTS_LAYER in state.names:
        group = folium.FeatureGroup(name=POINTS_LAYER, show=state.is_visible(POINTS_LAYER))
        for _, site in points.to_crs("EPSG:4326").iterrows():
            folium.CircleMarker(
                location=[site.geometry.y, site.geometry.x],
                radius=4,
                color="black",
                weight=1,
                fill=True,
                fill_opacity=0.8,
                tooltip=str(site[id_field]) if id_field else None,
            ).add_to(group)
        group.add_to(m)

    folium.LayerControl(collapsed=False).add_to(m)
    m.fit_bounds([[ymin, xmin], [ymax, xmax]])
    return m


def build_map(backend: Backend, result: Any, cfg: PipelineConfig, state: Optional[LayerState] = None) -> folium.Map:
    """Render the configured map layers of a pipeline result."""
    if state is None:
        state = LayerState.from_specs(cfg.map_layers, points=result.points is not None)
    layers: List[Tuple[MapLayerSpec, Any]] = [(s, result.pick(s.input, s.year)) for s in cfg.map_layers]
    id_field = cfg.points.id_field if cfg.points is not None else None
    return render_map(backend, layers, state, cfg.aoi, result.points, id_field)
