"""piwo.backends

Raster backends behind one interface (piwo.backends.base.Backend):
- local       → numpy/rasterio/scipy over GeoTIFF captures listed in `catalog:`
- earthengine → Google Earth Engine graphs, exports to Drive
"""

from __future__ import annotations

from piwo.backends.base import Backend
from piwo.config import PipelineConfig
from piwo.errors import ConfigError


def get_backend(cfg: PipelineConfig) -> Backend:
    """Instantiate the backend a pipeline config asks for."""
    if cfg.backend == "local":
        from piwo.backends.local import LocalBackend

        return LocalBackend.from_catalog(cfg.catalog)
    if cfg.backend == "earthengine":
        # imported lazily so the local backend works without earthengine-api credentials
        from piwo.backends.earthengine import EarthEngineBackend

        return EarthEngineBackend(project=cfg.project)
    raise ConfigError(f"Unknown backend {cfg.backend!r}")
