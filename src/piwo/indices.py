#!/usr/bin/env python3
"""piwo.indices

Spectral index formulas.

Each index is written once, as an expression over band aliases (NIR, RED,
SWIR1, ...). A source maps aliases to its sensor bands, e.g. Sentinel-2
RED -> B4, Landsat 8 RED -> SR_B4. The same expression string is evaluated
by ee.Image.expression() on Earth Engine and by pandas.eval() over numpy
arrays in the local backend, so both backends compute identical arithmetic.

Aliases:
  BLUE GREEN RED        visible
  RE1 RE2 RE3 RE4       red-edge (Sentinel-2 B5 B6 B7 B8A)
  NIR                   near infrared
  SWIR1 SWIR2           shortwave infrared
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Tuple

import numpy as np
import pandas as pd

from piwo.errors import ConfigError


_ALIAS_RE = re.compile(r"\b[A-Z][A-Z0-9_]*\b")


@dataclass(frozen=True)
class IndexSpec:
    name: str
    expression: str
    description: str = ""

    @property
    def aliases(self) -> Tuple[str, ...]:
        """Band aliases referenced by the expression, in order of appearance."""
        seen: List[str] = []
        for token in _ALIAS_RE.findall(self.expression):
            if token not in seen:
                seen.append(token)
        return tuple(seen)


INDICES: Dict[str, IndexSpec] = {
    spec.name: spec
    for spec in [
        IndexSpec("NDVI", "(NIR - RED) / (NIR + RED)", "Normalized difference vegetation index"),
        IndexSpec("NDWI", "(NIR - SWIR1) / (NIR + SWIR1)", "Normalized difference water index (Gao)"),
        IndexSpec("GNDVI", "(NIR - GREEN) / (NIR + GREEN)", "Green NDVI"),
        IndexSpec("NBR", "(NIR - SWIR2) / (NIR + SWIR2)", "Normalized burn ratio"),
        IndexSpec("EVI", "2.5 * (NIR - RED) / (NIR + 6 * RED - 7.5 * BLUE + 1)", "Enhanced vegetation index"),
        IndexSpec("LAI", "3.618 * (2.5 * (NIR - RED) / (NIR + 6 * RED - 7.5 * BLUE + 1)) - 0.118", "Leaf area index from EVI"),
        IndexSpec("DSWI", "(NIR + GREEN) / (SWIR1 + RED)", "Disease water stress index"),
        IndexSpec("RDI", "SWIR2 / RE4", "Ratio drought index"),
        IndexSpec("NDRE1", "(RE2 - RE1) / (RE2 + RE1)", "Normalized difference red-edge 1"),
        IndexSpec("NDRE2", "(RE3 - RE1) / (RE3 + RE1)", "Normalized difference red-edge 2"),
        IndexSpec("NDRE3", "(RE4 - RE3) / (RE4 + RE3)", "Normalized difference red-edge 3"),
        IndexSpec("CRE", "RE3 / RE1 - 1", "Chlorophyll red-edge"),
        IndexSpec("DRS", "sqrt(RED ** 2 + SWIR1 ** 2)", "Distance red-SWIR"),
    ]
}


def get_index(name: str) -> IndexSpec:
    try:
        return INDICES[name]
    except KeyError:
        raise ConfigError(f"Unknown index {name!r}. Available: {sorted(INDICES)}") from None


def resolve_indices(names: Iterable[str], band_map: Mapping[str, str]) -> List[IndexSpec]:
    """Look up indices and check the source maps every alias they use."""
    specs = []
    for name in names:
        spec = get_index(name)
        missing = [a for a in spec.aliases if a not in band_map]
        if missing:
            raise ConfigError(f"Index {name} needs band aliases {missing} which the source does not map")
        specs.append(spec)
    return specs


def evaluate(expression: str, arrays: Mapping[str, np.ndarray]) -> np.ndarray:
    """Evaluate an index expression over numpy arrays.

    Division by zero yields NaN (a masked pixel), not inf.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        out = pd.eval(expression, local_dict=dict(arrays), engine="python")
    out = np.asarray(out, dtype="float64")
    out[~np.isfinite(out)] = np.nan
    return out
