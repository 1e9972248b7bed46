"""piwo

Spatial covariates for PIWO survey points: per-period image composites,
neighbourhood aggregates, point tables and raster exports, on Google Earth
Engine or a local numpy/rasterio backend.

Subsystems:
- piwo.dates     → date windows
- piwo.series    → per-period composites and spectral indices
- piwo.aggregate → focal (neighbourhood) outputs
- piwo.extract   → point sampling
- piwo.export    → column selection, pixel budget, exports
- piwo.pipeline  → plan + execute
- piwo.webmap    → folium map
- piwo.cli       → command line
"""

__version__ = "0.1.0"
