#!/usr/bin/env python3

from __future__ import annotations

import folium
import pytest

from piwo.backends.local import LocalBackend
from piwo.config import MapLayerSpec
from piwo.errors import ConfigError
from piwo.webmap import POINTS_LAYER, LayerState, layer_title, render_map

NDVI = MapLayerSpec(input="s2", band="NDVI", year=2020, palette=("white", "green"))
STRESS = MapLayerSpec(input="s2", band="NDRS_stressed", year=2020, palette=("white", "red"), show=False)


def overlays(m):
    return {c.layer_name: c for c in m._children.values() if isinstance(c, folium.raster_layers.ImageOverlay)}


def test_initial_state_follows_specs():
    state = LayerState.from_specs([NDVI, STRESS])
    assert state.names == ("s2 NDVI 2020", "s2 NDRS_stressed 2020", POINTS_LAYER)
    assert state.is_visible("s2 NDVI 2020")
    assert not state.is_visible("s2 NDRS_stressed 2020")


def test_toggle_returns_new_state():
    state = LayerState.from_specs([NDVI, STRESS], points=False)
    toggled = state.toggle(layer_title(STRESS))
    assert toggled.is_visible("s2 NDRS_stressed 2020")
    assert not state.is_visible("s2 NDRS_stressed 2020")
    assert toggled.toggle(layer_title(STRESS)) == state


def test_show_hide_are_idempotent():
    state = LayerState.from_specs([NDVI])
    assert state.show("s2 NDVI 2020") == state
    assert state.hide("s2 NDVI 2020").hide("s2 NDVI 2020") == state.hide("s2 NDVI 2020")


def test_unknown_layer():
    with pytest.raises(ConfigError):
        LayerState.from_specs([NDVI]).toggle("landsat")


def test_render_reflects_state(make_raster, aoi, points_gdf):
    raster = make_raster(NDVI=0.5, NDRS_stressed=1.0)
    state = LayerState.from_specs([NDVI, STRESS])
    layers = [(NDVI, raster), (STRESS, raster)]
    m = render_map(LocalBackend(), layers, state, aoi, points_gdf, "location")

    shown = overlays(m)
    assert set(shown) == {"s2 NDVI 2020", "s2 NDRS_stressed 2020"}
    assert shown["s2 NDVI 2020"].show
    assert not shown["s2 NDRS_stressed 2020"].show
    assert any(isinstance(c, folium.LayerControl) for c in m._children.values())

    m2 = render_map(LocalBackend(), layers, state.toggle("s2 NDRS_stressed 2020"), aoi, points_gdf, "location")
    assert overlays(m2)["s2 NDRS_stressed 2020"].show
    html = m2.get_root().render()
    assert "A1" in html
