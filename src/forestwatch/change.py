"""
Forest-loss change detection.

This module handles:
- Endpoint (first year vs last year) forest-loss mapping
- Change statistics of a loss mask
- From/to class transition matrices

Only the first and last years of a classified series are compared; loss
and regrowth in between are not visible to ``detect_forest_loss``.
"""

import logging
from typing import Dict, List, Mapping, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import xarray as xr

from .errors import InsufficientHistoryError


logger = logging.getLogger(__name__)

ClassifiedSeries = Union[Mapping[int, xr.DataArray], Sequence[xr.DataArray]]


def _ordered_series(classified_series: ClassifiedSeries) -> List[Tuple[int, xr.DataArray]]:
    """Normalize a classified series to [(year, raster)] sorted by year."""
    if isinstance(classified_series, Mapping):
        return sorted(classified_series.items(), key=lambda item: item[0])

    items = []
    for i, raster in enumerate(classified_series):
        if 'year' not in raster.attrs:
            raise ValueError(f"Classified raster at position {i} has no 'year' attribute")
        items.append((int(raster.attrs['year']), raster))

    years = [year for year, _ in items]
    if years != sorted(years):
        raise ValueError(f"Classified series must be sorted by year, got {years}")
    return items


def detect_forest_loss(
    classified_series: ClassifiedSeries,
    forest_class_id: int = 1,
) -> xr.DataArray:
    """
    Flag pixels that were forest in the first year and are not in the last.

    Parameters
    ----------
    classified_series : dict or list
        {year: classified raster}, or rasters with a ``year`` attribute
        sorted by year
    forest_class_id : int
        Class id of forest

    Returns
    -------
    xr.DataArray
        Boolean ``deforestation`` mask. Pixels missing in either endpoint
        are False.

    Raises
    ------
    InsufficientHistoryError
        If fewer than two years are given
    """
    items = _ordered_series(classified_series)
    if len(items) < 2:
        raise InsufficientHistoryError(len(items))

    (first_year, first), (last_year, last) = items[0], items[-1]
    try:
        first, last = xr.align(first, last, join='exact')
    except ValueError as e:
        raise ValueError(
            f"Classified rasters for {first_year} and {last_year} are not pixel-aligned"
        ) from e

    valid = first.notnull() & last.notnull()
    loss = valid & (first == forest_class_id) & (last != forest_class_id)
    loss = loss.rename('deforestation')

    loss.attrs = {k: v for k, v in first.attrs.items() if k == 'scale'}
    loss.attrs['from_year'] = int(first_year)
    loss.attrs['to_year'] = int(last_year)
    loss.attrs['forest_class_id'] = int(forest_class_id)
    if first.rio.crs is not None:
        loss = loss.rio.write_crs(first.rio.crs)

    logger.info(
        "Forest loss %d-%d: %d pixels", first_year, last_year, int(loss.sum())
    )
    return loss


def compute_change_statistics(loss: xr.DataArray) -> Dict:
    """
    Summarize a loss mask as pixel counts and percentages.

    Returns
    -------
    dict
        total_pixels, loss_pixels, loss_pct, stable_pct
    """
    total_pixels = int(loss.size)
    loss_pixels = int(loss.sum())
    loss_pct = 100 * loss_pixels / total_pixels if total_pixels else float('nan')

    return {
        'total_pixels': total_pixels,
        'loss_pixels': loss_pixels,
        'loss_pct': loss_pct,
        'stable_pct': 100 - loss_pct,
    }


def transition_matrix(first: xr.DataArray, last: xr.DataArray) -> pd.DataFrame:
    """
    Count pixels per (from_class, to_class) pair between two classified rasters.

    Pixels missing in either raster are ignored.

    Returns
    -------
    pd.DataFrame
        Counts with from-classes as index and to-classes as columns
    """
    first, last = xr.align(first, last, join='exact')
    a = first.values.ravel()
    b = last.values.ravel()
    valid = np.isfinite(a) & np.isfinite(b)

    table = pd.crosstab(
        pd.Series(a[valid].astype(np.int64), name='from_class'),
        pd.Series(b[valid].astype(np.int64), name='to_class'),
    )
    return table


def multi_year_loss_analysis(
    classified_series: ClassifiedSeries,
    forest_class_id: int = 1,
) -> pd.DataFrame:
    """
    Loss statistics for every consecutive year pair.

    Informational companion to ``detect_forest_loss``, which only looks at
    the endpoints.

    Returns
    -------
    pd.DataFrame
        One row per transition with from_year, to_year and loss statistics
    """
    items = _ordered_series(classified_series)
    transitions = []

    for (y1, r1), (y2, r2) in zip(items[:-1], items[1:]):
        loss = detect_forest_loss({y1: r1, y2: r2}, forest_class_id)
        stats = compute_change_statistics(loss)
        stats['from_year'] = y1
        stats['to_year'] = y2
        stats['transition'] = f"{y1}-{y2}"
        transitions.append(stats)

    if not transitions:
        return pd.DataFrame()

    return pd.DataFrame(transitions)
