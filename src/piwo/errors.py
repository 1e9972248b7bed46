#!/usr/bin/env python3
"""piwo.errors

Exception types shared by the pipeline stages.

- ConfigError: bad dates, intervals, names or missing inputs. Raised before
  any backend query is issued.
- QuotaExceededError: an export would exceed the pixel budget. The caller
  must raise the scale or the max_pixels setting.
- BackendError: a backend was handed inputs it can't combine (e.g. captures
  on different grids in the local backend), or Earth Engine export tasks
  that ended FAILED or CANCELLED.

Empty periods and unsampled points are not errors; they show up as nulls.
"""

from __future__ import annotations


class PiwoError(Exception):
    """Base class for all piwo failures."""


class ConfigError(PiwoError, ValueError):
    """Invalid or incomplete pipeline configuration."""


class QuotaExceededError(PiwoError):
    """A request would exceed the backend pixel budget."""


class BackendError(PiwoError):
    """A backend could not evaluate the requested operation."""
