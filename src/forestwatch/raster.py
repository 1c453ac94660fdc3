"""
Raster data model helpers.

A raster is an ``xr.Dataset`` with one variable per band on dims ``(y, x)``.
Coordinates are pixel centres of a north-up grid, the CRS is carried by
rioxarray and the pixel size is kept in ``attrs['scale']``. An imagery
collection is the same structure with a leading ``time`` dim and a
``cloudy_pixel_percentage`` coordinate (the "datacube").

This module handles:
- Raster, scene and collection construction
- Grid geometry (bounds, pixel centres at arbitrary scales, point lookup)
- Region masks and CRS reprojection
- Whole-raster emptiness checks
"""

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import rioxarray  # noqa: F401  (registers the .rio accessor)
import shapely
import xarray as xr
from pyproj import Transformer

from .errors import MissingValueError


def create_raster(
    bands: Mapping[str, np.ndarray],
    origin: Tuple[float, float] = (0.0, 0.0),
    scale: float = 10.0,
    crs: Optional[str] = "EPSG:32737",
    attrs: Optional[Dict] = None,
) -> xr.Dataset:
    """
    Build a georeferenced raster from 2-D band arrays.

    Parameters
    ----------
    bands : mapping
        {band_name: 2-D array}; all arrays must share one shape
    origin : tuple
        (x, y) of the top-left pixel corner in CRS units
    scale : float
        Pixel size in CRS units
    crs : str, optional
        Coordinate reference system
    attrs : dict, optional
        Extra dataset attributes

    Returns
    -------
    xr.Dataset
        Raster with float bands on dims (y, x)
    """
    if not bands:
        raise ValueError("A raster needs at least one band")

    shapes = {name: np.shape(values) for name, values in bands.items()}
    if len(set(shapes.values())) != 1:
        raise ValueError(f"All bands must share one shape, got {shapes}")
    ny, nx = next(iter(shapes.values()))

    x0, y0 = origin
    x = x0 + (np.arange(nx) + 0.5) * scale
    y = y0 - (np.arange(ny) + 0.5) * scale

    ds = xr.Dataset(
        {name: (("y", "x"), np.asarray(values, dtype=np.float64)) for name, values in bands.items()},
        coords={"y": y, "x": x},
    )
    ds.attrs.update(attrs or {})
    ds.attrs["scale"] = float(scale)

    if crs is not None:
        ds = ds.rio.write_crs(crs)

    return ds


def create_scene(
    raster: xr.Dataset,
    timestamp,
    cloudy_pixel_percentage: float,
    sensor_id: Optional[str] = None,
) -> xr.Dataset:
    """
    Tag a raster as a single acquisition.

    The result carries a length-1 ``time`` dim and the scene's cloud cover
    as a coordinate along it, ready to be concatenated into a collection.
    """
    scene = raster.expand_dims(time=[pd.Timestamp(timestamp).to_datetime64()])
    scene = scene.assign_coords(
        cloudy_pixel_percentage=("time", [float(cloudy_pixel_percentage)])
    )
    if sensor_id is not None:
        scene.attrs["sensor_id"] = sensor_id
    return scene


def build_collection(scenes: Sequence[xr.Dataset]) -> xr.Dataset:
    """
    Concatenate scenes into a time-ordered collection.

    Parameters
    ----------
    scenes : list
        Scenes from ``create_scene`` sharing one pixel grid

    Returns
    -------
    xr.Dataset
        Collection with dims (time, y, x), sorted by time

    Raises
    ------
    ValueError
        If no scenes are given or their grids differ
    """
    scenes = [s for s in scenes if s is not None]
    if len(scenes) == 0:
        raise ValueError("No scenes to build a collection from")

    crs = scenes[0].rio.crs
    collection = xr.concat(scenes, dim="time", join="exact").sortby("time")
    collection.attrs = dict(scenes[0].attrs)
    if crs is not None:
        collection = collection.rio.write_crs(crs)

    return collection


def get_temporal_info(collection: xr.Dataset) -> Dict:
    """
    Extract temporal information from a collection.

    Returns
    -------
    dict
        Temporal statistics and coverage info
    """
    times = pd.DatetimeIndex(collection.time.values)

    return {
        'n_scenes': len(times),
        'first_date': times.min(),
        'last_date': times.max(),
        'years': sorted(times.year.unique().tolist()),
        'scenes_per_year': times.year.value_counts().to_dict(),
        'scenes_per_month': times.month.value_counts().to_dict(),
    }


# ---------------------------------------------------------------------------
# Grid geometry
# ---------------------------------------------------------------------------

def raster_scale(raster) -> float:
    """Pixel size of a raster in CRS units."""
    if "scale" in raster.attrs:
        return float(raster.attrs["scale"])
    if raster.sizes.get("x", 0) > 1:
        return float(abs(raster.x.values[1] - raster.x.values[0]))
    if raster.sizes.get("y", 0) > 1:
        return float(abs(raster.y.values[1] - raster.y.values[0]))
    raise ValueError("Cannot infer the scale of a single-pixel raster without attrs['scale']")


def _grid_geometry(raster) -> Tuple[float, float, float, int, int]:
    """(left, top, scale, ny, nx) of a north-up raster."""
    res = raster_scale(raster)
    x = raster.x.values
    y = raster.y.values
    if (len(x) > 1 and x[1] < x[0]) or (len(y) > 1 and y[1] > y[0]):
        raise ValueError("Raster must be north-up (x ascending, y descending)")
    left = float(x[0]) - res / 2
    top = float(y[0]) + res / 2
    return left, top, res, len(y), len(x)


def raster_bounds(raster) -> Tuple[float, float, float, float]:
    """Outer pixel-edge bounds (xmin, ymin, xmax, ymax)."""
    left, top, res, ny, nx = _grid_geometry(raster)
    return left, top - ny * res, left + nx * res, top


def grid_centers(
    raster,
    scale: Optional[float] = None,
    bounds: Optional[Tuple[float, float, float, float]] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Pixel-centre coordinates of a grid at ``scale`` aligned to the raster.

    The grid shares the raster's top-left corner, is clipped to the raster
    extent and, if given, to ``bounds``.

    Returns
    -------
    tuple
        (xs, ys) 1-D arrays; xs ascending, ys descending
    """
    left, top, res, ny, nx = _grid_geometry(raster)
    scale = res if scale is None else float(scale)
    xmin, ymin, xmax, ymax = raster_bounds(raster)

    if bounds is not None:
        xmin, ymin = max(xmin, bounds[0]), max(ymin, bounds[1])
        xmax, ymax = min(xmax, bounds[2]), min(ymax, bounds[3])
        if xmin > xmax or ymin > ymax:
            return np.empty(0), np.empty(0)

    # Column/row ranges whose centres fall within [min, max]
    i0 = max(int(np.ceil((xmin - left) / scale - 0.5)), 0)
    i1 = int(np.floor((xmax - left) / scale - 0.5))
    j0 = max(int(np.ceil((top - ymax) / scale - 0.5)), 0)
    j1 = int(np.floor((top - ymin) / scale - 0.5))

    xs = left + (np.arange(i0, i1 + 1) + 0.5) * scale
    ys = top - (np.arange(j0, j1 + 1) + 0.5) * scale

    # Centres at a coarser scale may overshoot the far edge
    xs = xs[xs < left + nx * res]
    ys = ys[ys > top - ny * res]
    return xs, ys


def pixel_index(raster, xs: np.ndarray, ys: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Row/column of the raster pixel containing each point.

    Returns
    -------
    tuple
        (rows, cols, inside); rows/cols are only meaningful where inside
    """
    left, top, res, ny, nx = _grid_geometry(raster)
    cols = np.floor((np.asarray(xs, dtype=float) - left) / res).astype(np.int64)
    rows = np.floor((top - np.asarray(ys, dtype=float)) / res).astype(np.int64)
    inside = (cols >= 0) & (cols < nx) & (rows >= 0) & (rows < ny)
    return np.clip(rows, 0, max(ny - 1, 0)), np.clip(cols, 0, max(nx - 1, 0)), inside


def resample_nearest(data: xr.DataArray, scale: float) -> xr.DataArray:
    """
    Nearest-neighbour resample of a single-band raster onto a grid at ``scale``.

    Returns the input unchanged when the scale already matches.
    """
    if np.isclose(scale, raster_scale(data)):
        return data

    xs, ys = grid_centers(data, scale)
    X, Y = np.meshgrid(xs, ys)
    rows, cols, _ = pixel_index(data, X.ravel(), Y.ravel())
    values = data.values[rows, cols].reshape(len(ys), len(xs))

    out = xr.DataArray(values, coords={"y": ys, "x": xs}, dims=("y", "x"), name=data.name)
    out.attrs = dict(data.attrs)
    out.attrs["scale"] = float(scale)
    if data.rio.crs is not None:
        out = out.rio.write_crs(data.rio.crs)
    return out


# ---------------------------------------------------------------------------
# Regions
# ---------------------------------------------------------------------------

def region_mask(raster, region=None) -> xr.DataArray:
    """
    Boolean (y, x) mask of pixels whose centre lies in ``region``.

    Pixels on the region boundary are included. ``region=None`` selects
    every pixel.
    """
    shape = (raster.sizes["y"], raster.sizes["x"])
    coords = {"y": raster.y, "x": raster.x}

    if region is None:
        return xr.DataArray(np.ones(shape, dtype=bool), coords=coords, dims=("y", "x"))

    X, Y = np.meshgrid(raster.x.values, raster.y.values)
    inside = shapely.intersects_xy(region, X, Y)
    return xr.DataArray(np.asarray(inside, dtype=bool), coords=coords, dims=("y", "x"))


def reproject_bbox(
    bbox: List[float],
    src_crs: str = "EPSG:4326",
    dst_crs: str = "EPSG:32737"
) -> List[float]:
    """
    Transform bounding box between coordinate reference systems.

    Parameters
    ----------
    bbox : list
        Bounding box [xmin, ymin, xmax, ymax]
    src_crs : str
        Source CRS
    dst_crs : str
        Destination CRS

    Returns
    -------
    list
        Transformed bounding box [xmin, ymin, xmax, ymax]
    """
    transformer = Transformer.from_crs(src_crs, dst_crs, always_xy=True)
    xmin, ymin, xmax, ymax = transformer.transform_bounds(*bbox)
    return [xmin, ymin, xmax, ymax]


def reproject_geometry(geometry, src_crs: str, dst_crs: str):
    """Reproject a shapely geometry between CRSs."""
    transformer = Transformer.from_crs(src_crs, dst_crs, always_xy=True)
    return shapely.transform(geometry, transformer.transform, interleaved=False)


def ensure_not_empty(data, what: str, **context):
    """
    Raise ``MissingValueError`` if ``data`` holds no finite value.

    Works on DataArrays and Datasets; returns ``data`` unchanged otherwise.
    """
    if isinstance(data, xr.Dataset):
        has_values = any(bool(data[v].notnull().any()) for v in data.data_vars)
    else:
        has_values = bool(data.notnull().any())

    if not has_values:
        raise MissingValueError(what, context)
    return data


def intersects_region(collection: xr.Dataset, region) -> xr.DataArray:
    """Per-scene flag: does any valid observation fall inside ``region``?"""
    if region is None:
        return xr.DataArray(np.ones(collection.sizes["time"], dtype=bool), dims="time")

    inside = region_mask(collection, region)
    valid = None
    for name in collection.data_vars:
        band_valid = collection[name].notnull()
        valid = band_valid if valid is None else (valid | band_valid)

    return (valid & inside).any(dim=("y", "x"))
