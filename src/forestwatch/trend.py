"""
Per-pixel temporal trend of an index.

This module handles:
- Ordinary least squares of an index against year, for every pixel
- Regional mean index time series

The regression is closed-form and vectorised over blocks of rows; one
block buffer is allocated and reused for the whole grid.
"""

import logging
import warnings
from typing import Mapping, Tuple

import numpy as np
import pandas as pd
import xarray as xr

from .raster import ensure_not_empty, region_mask


logger = logging.getLogger(__name__)


def _as_year_items(composites) -> Tuple[np.ndarray, list]:
    """(years, rasters) sorted by year from a CompositeSeries, dict or list."""
    if hasattr(composites, "composites"):
        composites = composites.composites

    if isinstance(composites, Mapping):
        items = sorted(composites.items(), key=lambda item: item[0])
    else:
        items = sorted(((int(r.attrs['year']), r) for r in composites), key=lambda item: item[0])

    years = np.asarray([float(year) for year, _ in items])
    return years, [raster for _, raster in items]


def fit_linear_trend(
    composites,
    band: str = 'NDVI',
    tile_rows: int = 512,
) -> xr.Dataset:
    """
    Fit ``band = offset + slope * year`` independently for every pixel.

    Only years where the pixel has a value enter its fit. Pixels with fewer
    than two valid years get NaN.

    Parameters
    ----------
    composites : CompositeSeries, dict or list
        Annual composites ({year: composite} or rasters with a ``year``
        attribute)
    band : str
        Band to regress
    tile_rows : int
        Rows processed per block

    Returns
    -------
    xr.Dataset
        ``slope`` (units per year), ``offset`` (value at year 0) and
        ``n_observations``
    """
    years, rasters = _as_year_items(composites)
    if len(rasters) == 0:
        raise ValueError("No composites to fit a trend on")

    arrays = [r[band].transpose("y", "x").values for r in rasters]
    ny, nx = arrays[0].shape
    for year, arr in zip(years, arrays):
        if arr.shape != (ny, nx):
            raise ValueError(f"Composite {int(year)} has shape {arr.shape}, expected {(ny, nx)}")

    n_years = len(years)
    # Centering the covariate keeps the normal equations well conditioned
    t_mean = years.mean()
    t = (years - t_mean)[:, None, None]

    slope = np.full((ny, nx), np.nan)
    offset = np.full((ny, nx), np.nan)
    n_obs = np.zeros((ny, nx), dtype=np.int64)

    tile_rows = max(1, min(tile_rows, ny))
    block = np.empty((n_years, tile_rows, nx))

    for r0 in range(0, ny, tile_rows):
        r1 = min(r0 + tile_rows, ny)
        values = block[:, :r1 - r0]
        for i, arr in enumerate(arrays):
            values[i] = arr[r0:r1]

        valid = np.isfinite(values)
        n = valid.sum(axis=0)
        y = np.where(valid, values, 0.0)
        tv = np.where(valid, t, 0.0)

        sum_t = tv.sum(axis=0)
        sum_y = y.sum(axis=0)
        sum_tt = (tv * tv).sum(axis=0)
        sum_ty = (tv * y).sum(axis=0)

        denom = n * sum_tt - sum_t ** 2
        fit = (n >= 2) & (denom > 0)
        with np.errstate(invalid='ignore', divide='ignore'):
            b = np.where(fit, (n * sum_ty - sum_t * sum_y) / denom, np.nan)
            a = np.where(fit, (sum_y - b * sum_t) / n, np.nan)

        slope[r0:r1] = b
        # Shift intercept from the centred axis back to year 0
        offset[r0:r1] = a - b * t_mean
        n_obs[r0:r1] = n

    coords = {"y": rasters[0].y, "x": rasters[0].x}
    result = xr.Dataset(
        {
            'slope': (("y", "x"), slope),
            'offset': (("y", "x"), offset),
            'n_observations': (("y", "x"), n_obs),
        },
        coords=coords,
    )
    result.attrs['band'] = band
    result.attrs['years'] = [int(y) for y in years]
    if 'scale' in rasters[0].attrs:
        result.attrs['scale'] = rasters[0].attrs['scale']
    if rasters[0].rio.crs is not None:
        result = result.rio.write_crs(rasters[0].rio.crs)

    ensure_not_empty(result['slope'], f"{band} trend", band=band, n_years=n_years)
    logger.info("Fitted %s trend over %d years", band, n_years)
    return result


def fit_trend(composites, band: str = 'NDVI', tile_rows: int = 512) -> xr.DataArray:
    """
    Per-pixel OLS slope of ``band`` against year.

    Returns
    -------
    xr.DataArray
        ``slope`` raster in index units per year
    """
    fit = fit_linear_trend(composites, band, tile_rows)
    slope = fit['slope']
    slope.attrs = dict(fit.attrs)
    return slope


def index_time_series(composites, band: str = 'NDVI', region=None) -> pd.Series:
    """
    Regional mean of an index for every year.

    Parameters
    ----------
    composites : CompositeSeries, dict or list
        Annual composites
    band : str
        Band to average
    region : shapely geometry, optional
        Averaging region in the composites' CRS. Default: whole raster.

    Returns
    -------
    pd.Series
        Mean value indexed by year (NaN for years with no valid pixel)
    """
    years, rasters = _as_year_items(composites)
    means = []
    for raster in rasters:
        inside = region_mask(raster, region)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            means.append(float(raster[band].where(inside).mean(skipna=True)))

    return pd.Series(means, index=pd.Index(years.astype(int), name='year'), name=band)
