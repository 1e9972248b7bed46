#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pytest

from piwo.errors import ConfigError
from piwo.indices import INDICES, evaluate, get_index, resolve_indices


def test_ndvi_values():
    out = evaluate(INDICES["NDVI"].expression, {"NIR": np.array([0.3, 0.5]), "RED": np.array([0.1, 0.5])})
    assert np.allclose(out, [0.5, 0.0])


def test_division_by_zero_is_masked():
    out = evaluate(INDICES["NDVI"].expression, {"NIR": np.array([0.0]), "RED": np.array([0.0])})
    assert np.isnan(out[0])


def test_drs_is_distance_in_red_swir_space():
    out = evaluate(INDICES["DRS"].expression, {"RED": np.array([0.3]), "SWIR1": np.array([0.4])})
    assert np.allclose(out, [0.5])


def test_aliases_in_order_of_appearance():
    assert get_index("EVI").aliases == ("NIR", "RED", "BLUE")
    assert get_index("RDI").aliases == ("SWIR2", "RE4")


def test_every_index_parses_over_its_aliases():
    for spec in INDICES.values():
        arrays = {a: np.array([0.2, 0.4]) + i * 0.05 for i, a in enumerate(spec.aliases)}
        out = evaluate(spec.expression, arrays)
        assert out.shape == (2,)


def test_unknown_index():
    with pytest.raises(ConfigError, match="Unknown index"):
        get_index("XYZ")


def test_missing_alias_is_config_error():
    with pytest.raises(ConfigError, match="SWIR1"):
        resolve_indices(["NDWI"], {"NIR": "B8", "RED": "B4"})
