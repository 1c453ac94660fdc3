"""
Spectral index computation.

This module handles:
- Normalized differences (NDVI, NDMI)
- Enhanced Vegetation Index (EVI)
- Appending index bands to rasters and collections

All functions are element-wise, so they apply equally to a single raster
(y, x) and to a collection (time, y, x). A zero denominator yields NaN.
"""

import xarray as xr

from .config import BandMapping, SENTINEL2_BANDS


def _safe_divide(numerator: xr.DataArray, denominator: xr.DataArray) -> xr.DataArray:
    """Divide, returning NaN wherever the denominator is zero."""
    return numerator / denominator.where(denominator != 0)


def normalized_difference(a: xr.DataArray, b: xr.DataArray) -> xr.DataArray:
    """(a - b) / (a + b) with NaN on a zero sum."""
    return _safe_divide(a - b, a + b)


def compute_ndvi(
    raster: xr.Dataset,
    red: str = 'B4',
    nir: str = 'B8'
) -> xr.DataArray:
    """
    Compute Normalized Difference Vegetation Index.

    NDVI = (NIR - Red) / (NIR + Red)

    Parameters
    ----------
    raster : xr.Dataset
        Dataset containing red and NIR bands
    red : str
        Name of red band variable
    nir : str
        Name of NIR band variable

    Returns
    -------
    xr.DataArray
        NDVI values (NaN where NIR + Red == 0)
    """
    return normalized_difference(raster[nir], raster[red]).rename('NDVI')


def compute_ndmi(
    raster: xr.Dataset,
    nir: str = 'B8',
    swir1: str = 'B11'
) -> xr.DataArray:
    """
    Compute Normalized Difference Moisture Index.

    NDMI = (NIR - SWIR1) / (NIR + SWIR1)
    """
    return normalized_difference(raster[nir], raster[swir1]).rename('NDMI')


def compute_evi(
    raster: xr.Dataset,
    blue: str = 'B2',
    red: str = 'B4',
    nir: str = 'B8'
) -> xr.DataArray:
    """
    Compute Enhanced Vegetation Index.

    EVI = 2.5 * (NIR - Red) / (NIR + 6 * Red - 7.5 * Blue + 1)
    """
    nir_b, red_b, blue_b = raster[nir], raster[red], raster[blue]
    denominator = nir_b + 6 * red_b - 7.5 * blue_b + 1
    return (2.5 * _safe_divide(nir_b - red_b, denominator)).rename('EVI')


def add_spectral_indices(
    raster: xr.Dataset,
    band_mapping: BandMapping = SENTINEL2_BANDS
) -> xr.Dataset:
    """
    Append NDVI, NDMI and EVI bands to a raster or collection.

    Existing index bands are recomputed from the reflectance bands, so
    applying this twice gives identical values.

    Parameters
    ----------
    raster : xr.Dataset
        Raster holding at least the blue, red, NIR and SWIR1 bands
    band_mapping : BandMapping
        Sensor names of the reflectance bands

    Returns
    -------
    xr.Dataset
        Copy of ``raster`` with NDVI, NDMI and EVI bands
    """
    m = band_mapping
    missing = [b for b in (m.blue, m.red, m.nir, m.swir1) if b not in raster]
    if missing:
        raise KeyError(f"Raster is missing bands required for indices: {missing}")

    return raster.assign(
        NDVI=compute_ndvi(raster, red=m.red, nir=m.nir),
        NDMI=compute_ndmi(raster, nir=m.nir, swir1=m.swir1),
        EVI=compute_evi(raster, blue=m.blue, red=m.red, nir=m.nir),
    )
