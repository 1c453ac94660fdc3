"""
Area statistics of raster masks.

This module handles:
- Per-pixel area (planar or geodesic, depending on the CRS)
- Zonal sums of masked area in hectares
- Area per land-cover class
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

import numpy as np
import pandas as pd
import xarray as xr
from pyproj import CRS, Geod

from .raster import raster_scale, region_mask, resample_nearest


logger = logging.getLogger(__name__)

M2_PER_HECTARE = 10_000.0


@dataclass(frozen=True)
class AreaSummary:
    """Total area of the true pixels of a mask."""
    pixel_count: int
    area_m2: float

    @property
    def area_ha(self) -> float:
        return self.area_m2 / M2_PER_HECTARE


def pixel_area(raster) -> xr.DataArray:
    """
    Area of every pixel in square metres.

    Projected CRSs (and rasters without a CRS) use ``scale**2``; geographic
    CRSs use the geodesic area of each cell on the WGS84 ellipsoid, which
    only varies with latitude.

    Returns
    -------
    xr.DataArray
        (y, x) pixel areas in m²
    """
    scale = raster_scale(raster)
    shape = (raster.sizes["y"], raster.sizes["x"])
    coords = {"y": raster.y, "x": raster.x}
    crs = raster.rio.crs

    if crs is None or not CRS.from_user_input(crs).is_geographic:
        if crs is not None and CRS.from_user_input(crs).axis_info[0].unit_name not in ("metre", "meter"):
            logger.warning("CRS %s is not in metres; pixel area uses scale**2 as-is", crs)
        return xr.DataArray(np.full(shape, scale * scale), coords=coords, dims=("y", "x"))

    geod = Geod(ellps="WGS84")
    half = scale / 2
    row_areas = np.empty(shape[0])
    for j, lat in enumerate(raster.y.values):
        lons = [-half, half, half, -half]
        lats = [lat - half, lat - half, lat + half, lat + half]
        area, _ = geod.polygon_area_perimeter(lons, lats)
        row_areas[j] = abs(area)

    return xr.DataArray(
        np.repeat(row_areas[:, None], shape[1], axis=1), coords=coords, dims=("y", "x")
    )


def sum_area(
    mask: xr.DataArray,
    region=None,
    pixel_area_provider: Union[Callable, float, None] = pixel_area,
    scale: Optional[float] = None,
) -> AreaSummary:
    """
    Sum the area of true mask pixels inside a region.

    Parameters
    ----------
    mask : xr.DataArray
        Boolean (y, x) mask; NaN counts as False
    region : shapely geometry, optional
        Region in the mask's CRS; pixels whose centre lies inside (or on
        the boundary) are counted. Default: whole mask.
    pixel_area_provider : callable or float
        ``f(raster) -> per-pixel m²`` array, or a constant pixel area in m²
    scale : float, optional
        Resample the mask (nearest neighbour) to this pixel size first

    Returns
    -------
    AreaSummary
        Pixel count, m² and hectares
    """
    if scale is not None:
        mask = resample_nearest(mask, scale)

    flags = mask.fillna(0).astype(bool) & region_mask(mask, region)

    if pixel_area_provider is None:
        pixel_area_provider = pixel_area
    if callable(pixel_area_provider):
        areas = np.asarray(pixel_area_provider(mask), dtype=np.float64)
    else:
        areas = np.full(flags.shape, float(pixel_area_provider))

    selected = flags.values
    summary = AreaSummary(
        pixel_count=int(selected.sum()),
        area_m2=float(np.where(selected, areas, 0.0).sum()),
    )
    logger.info("Masked area: %d pixels, %.4f ha", summary.pixel_count, summary.area_ha)
    return summary


def area_by_class(
    classified: xr.DataArray,
    region=None,
    pixel_area_provider: Union[Callable, float, None] = pixel_area,
) -> pd.Series:
    """
    Hectares covered by each class of a classified raster.

    Returns
    -------
    pd.Series
        Area in ha indexed by class id
    """
    values = classified.values
    classes = np.unique(values[np.isfinite(values)]).astype(np.int64)

    areas = {}
    for class_id in classes:
        summary = sum_area(classified == class_id, region, pixel_area_provider)
        areas[int(class_id)] = summary.area_ha

    return pd.Series(areas, name='area_ha', dtype=float).rename_axis('class')
