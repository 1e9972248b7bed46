#!/usr/bin/env python3
"""piwo.terrain

Terrain derivatives for static elevation layers.

Derivatives (band name: definition):
- slope  : degrees, from the backend's terrain operator
- aspect : degrees clockwise from north
- tpi    : elevation minus the mean elevation within `tpi_radius` meters
- hli    : heat load index, McCune & Keon (2002) eq. 3, with folded aspect and
           the AOI centroid latitude
- twi    : topographic wetness index, ln(upslope area / tan(slope)); flat
           pixels are masked

Everything is expressed through backend primitives (terrain, focal,
add_expression), so both backends compute the same formulas.
"""

from __future__ import annotations

import logging
import math
from typing import Any, List

from shapely.geometry.base import BaseGeometry

from piwo.backends.base import Backend
from piwo.config import KernelSpec, StaticLayerSpec
from piwo.errors import ConfigError

logger = logging.getLogger(__name__)

DEG = math.pi / 180.0


def hli_expression(latitude: float) -> str:
    """ln-linear HLI over slope S and aspect A (both degrees)."""
    lat = abs(latitude) * DEG
    cos_l, sin_l = math.cos(lat), math.sin(lat)
    # fold about the NE-SW axis (NW-SE in the southern hemisphere)
    fold = 225 if latitude >= 0 else 315
    s = f"(S * {DEG!r})"
    a = f"(abs(180 - abs(A - {fold})) * {DEG!r})"
    return (
        f"exp(-1.467 + 1.582 * {cos_l!r} * cos({s}) - 1.5 * cos({a}) * sin({s}) * {sin_l!r}"
        f" - 0.262 * {sin_l!r} * sin({s}) + 0.607 * sin({a}) * sin({s}))"
    )


TWI_EXPRESSION = f"log(ACC / (sin(S * {DEG!r}) / cos(S * {DEG!r})))"
TPI_EXPRESSION = "E - M"


def add_terrain(backend: Backend, raster: Any, spec: StaticLayerSpec, aoi: BaseGeometry) -> Any:
    """Append the derivatives listed in `spec.terrain`, in that order."""
    if not spec.terrain:
        return raster

    base = backend.band_names(raster)
    elev = spec.elevation_band
    if elev not in base:
        raise ConfigError(f"static '{spec.name}': elevation band '{elev}' not in {base}")
    wanted: List[str] = list(spec.terrain)

    out = raster
    if {"slope", "aspect", "hli", "twi"} & set(wanted):
        out = backend.terrain(out, elev)

    for name in wanted:
        if name == "tpi":
            kernel = KernelSpec(radius=spec.tpi_radius, units="meters", shape="circle", reducer="mean")
            mean = backend.rename(backend.focal(backend.select(out, [elev]), kernel), ["tpi_mean"])
            out = backend.stack([out, mean])
            out = backend.add_expression(out, "tpi", TPI_EXPRESSION, {"E": elev, "M": "tpi_mean"})
        elif name == "hli":
            out = backend.add_expression(out, "hli", hli_expression(aoi.centroid.y), {"S": "slope", "A": "aspect"})
        elif name == "twi":
            if spec.flow_band not in base:
                raise ConfigError(f"static '{spec.name}': flow band '{spec.flow_band}' not in {base}")
            out = backend.add_expression(out, "twi", TWI_EXPRESSION, {"ACC": spec.flow_band, "S": "slope"})

    keep = base + [n for n in wanted if n not in base]
    logger.debug(f"static '{spec.name}': terrain {wanted}")
    return backend.select(out, keep)
