"""
Annual composite generation.

This module handles:
- Scene filtering by year, region and scene-level cloud cover
- Per-pixel temporal median compositing
- Building the multi-year composite series (years in parallel)
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import dask
import numpy as np
import pandas as pd
import xarray as xr

from .config import BandMapping, SENTINEL2_BANDS
from .errors import EmptyCollectionError, ForestWatchError, MissingValueError
from .indices import add_spectral_indices
from .raster import ensure_not_empty, intersects_region


logger = logging.getLogger(__name__)


def filter_scenes(
    collection: xr.Dataset,
    year: int,
    region=None,
    cloud_threshold: float = 10.0
) -> xr.Dataset:
    """
    Select the scenes contributing to one annual composite.

    Parameters
    ----------
    collection : xr.Dataset
        Imagery collection with ``time`` dim and
        ``cloudy_pixel_percentage`` coordinate
    year : int
        Calendar year (Jan 1 to Dec 31, both inclusive)
    region : shapely geometry, optional
        Region in the collection's CRS; scenes without valid data inside
        it are dropped
    cloud_threshold : float
        Scenes with cloudy_pixel_percentage >= threshold are dropped

    Returns
    -------
    xr.Dataset
        Subset of the collection (possibly with zero scenes)
    """
    in_year = collection.time.dt.year == year
    clear = collection["cloudy_pixel_percentage"] < cloud_threshold
    keep = (in_year & clear).values

    if keep.any() and region is not None:
        candidates = collection.isel(time=np.flatnonzero(keep))
        touches = intersects_region(candidates, region).values
        keep[np.flatnonzero(keep)[~touches]] = False

    return collection.isel(time=np.flatnonzero(keep))


def build_annual_composite(
    collection: xr.Dataset,
    year: int,
    region=None,
    cloud_threshold: float = 10.0,
    band_mapping: BandMapping = SENTINEL2_BANDS,
    bands: Optional[Sequence[str]] = None,
) -> xr.Dataset:
    """
    Create the median composite for one calendar year.

    Spectral indices are derived per scene before reduction, so index
    bands are medians of per-scene indices rather than indices of median
    reflectance.

    Parameters
    ----------
    collection : xr.Dataset
        Imagery collection
    year : int
        Target year
    region : shapely geometry, optional
        Region of interest in the collection's CRS
    cloud_threshold : float
        Maximum scene cloud percentage (exclusive)
    band_mapping : BandMapping
        Sensor names of the reflectance bands
    bands : list, optional
        Bands to keep in the composite. Default keeps all.

    Returns
    -------
    xr.Dataset
        Composite with attrs year, time_start and n_observations

    Raises
    ------
    EmptyCollectionError
        If no scene survives filtering
    MissingValueError
        If every pixel of every band is missing
    """
    subset = filter_scenes(collection, year, region, cloud_threshold)
    n_obs = subset.sizes["time"]

    if n_obs == 0:
        raise EmptyCollectionError(year, region, cloud_threshold)

    with_indices = add_spectral_indices(subset, band_mapping)
    if bands is not None:
        with_indices = with_indices[list(bands)]

    with warnings.catch_warnings():
        # All-NaN pixels stay NaN
        warnings.simplefilter("ignore", category=RuntimeWarning)
        composite = with_indices.median(dim="time", skipna=True)

    composite = composite.drop_vars("cloudy_pixel_percentage", errors="ignore")
    composite.attrs = dict(collection.attrs)
    composite.attrs['year'] = int(year)
    composite.attrs['time_start'] = pd.Timestamp(year=int(year), month=1, day=1).isoformat()
    composite.attrs['n_observations'] = int(n_obs)
    if collection.rio.crs is not None:
        composite = composite.rio.write_crs(collection.rio.crs)

    ensure_not_empty(composite, f"Composite for {year}", year=year, n_observations=n_obs)

    logger.info("Composite %d built from %d scenes", year, n_obs)
    return composite


@dataclass
class CompositeSeries:
    """Annual composites ordered by year, plus the years that failed."""
    composites: Dict[int, xr.Dataset] = field(default_factory=dict)
    skipped: Dict[int, ForestWatchError] = field(default_factory=dict)

    def __post_init__(self):
        self.composites = dict(sorted(self.composites.items()))

    @property
    def years(self) -> List[int]:
        return list(self.composites.keys())

    @property
    def latest(self) -> xr.Dataset:
        if not self.composites:
            raise ValueError("Composite series is empty")
        return self.composites[self.years[-1]]

    def __len__(self) -> int:
        return len(self.composites)

    def __iter__(self):
        return iter(self.composites.values())

    def to_dataset(self) -> xr.Dataset:
        """Stack the composites along a ``year`` dim."""
        if not self.composites:
            raise ValueError("Composite series is empty")
        return xr.concat(
            list(self.composites.values()),
            dim=pd.Index(self.years, name="year"),
            combine_attrs="drop_conflicts",
        )


def build_composite_series(
    collection: xr.Dataset,
    years: Iterable[int],
    region=None,
    cloud_threshold: float = 10.0,
    band_mapping: BandMapping = SENTINEL2_BANDS,
    bands: Optional[Sequence[str]] = None,
    parallel: bool = True,
    fail_fast: bool = False,
) -> CompositeSeries:
    """
    Build one composite per year.

    Years are independent and are computed concurrently with Dask when
    ``parallel`` is set. A year that fails with ``EmptyCollectionError``
    or ``MissingValueError`` is skipped and recorded in
    ``CompositeSeries.skipped``, unless ``fail_fast`` is set, in which case
    the error of the earliest failing year is raised.

    Returns
    -------
    CompositeSeries
        Composites ordered by year
    """
    years = sorted(int(y) for y in years)

    def _build(year):
        try:
            return year, build_annual_composite(
                collection, year, region, cloud_threshold, band_mapping, bands
            ), None
        except (EmptyCollectionError, MissingValueError) as e:
            return year, None, e

    if parallel:
        delayed_results = [dask.delayed(_build)(year) for year in years]
        results = dask.compute(*delayed_results)
    else:
        results = [_build(year) for year in years]

    series = CompositeSeries()
    for year, composite, error in results:
        if error is not None:
            if fail_fast:
                raise error
            logger.warning("Skipping %d: %s", year, error)
            series.skipped[year] = error
        else:
            series.composites[year] = composite

    series.composites = dict(sorted(series.composites.items()))
    logger.info(
        "Composite series: %d/%d years built", len(series.composites), len(years)
    )
    return series
