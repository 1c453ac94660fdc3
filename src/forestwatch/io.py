"""
Imagery sources and raster sinks.

This module handles:
- The ``ImageSource`` / ``RasterSink`` boundaries of the pipeline
- In-memory implementations of both
- EOPF STAC catalog access and Sentinel-2 Zarr scene loading
- Scene Classification Layer (SCL) pixel masking
- GeoTIFF persistence
"""

import logging
import os
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import dask
import numpy as np
import pandas as pd
import xarray as xr

from .raster import build_collection, create_scene, intersects_region, reproject_bbox, reproject_geometry


logger = logging.getLogger(__name__)


class ImageSource(Protocol):
    """Provider of pixel-aligned imagery collections."""

    def fetch(
        self,
        sensor_id: str,
        date_range: Tuple[str, str],
        region,
        bands: Sequence[str],
        region_crs: Optional[str] = None,
    ) -> xr.Dataset:
        ...


class RasterSink(Protocol):
    """Durable storage for finished rasters."""

    def persist(self, raster, destination: str) -> None:
        ...


def _date_bounds(date_range: Tuple[str, str]) -> Tuple[pd.Timestamp, pd.Timestamp]:
    start = pd.Timestamp(date_range[0])
    end = pd.Timestamp(date_range[1])
    # A bare end date covers that whole day
    if end == end.normalize():
        end = end + pd.Timedelta(days=1) - pd.Timedelta(1, unit="ns")
    return start, end


class InMemoryImageSource:
    """
    Serve collections already held in memory.

    Parameters
    ----------
    collections : mapping
        {sensor_id: collection}
    """

    def __init__(self, collections: Mapping[str, xr.Dataset]):
        self.collections = dict(collections)

    def fetch(
        self,
        sensor_id: str,
        date_range: Tuple[str, str],
        region=None,
        bands: Optional[Sequence[str]] = None,
        region_crs: Optional[str] = None,
    ) -> xr.Dataset:
        """
        Scenes of one sensor inside ``date_range`` with valid data in ``region``.

        ``region_crs`` names the CRS of ``region`` when it differs from the
        collection's; the region is then reprojected before the check.
        """
        if sensor_id not in self.collections:
            raise KeyError(f"Unknown sensor '{sensor_id}'")

        collection = self.collections[sensor_id]
        start, end = _date_bounds(date_range)
        times = pd.DatetimeIndex(collection.time.values)
        keep = (times >= start) & (times <= end)

        subset = collection.isel(time=np.flatnonzero(keep))
        if region is not None and region_crs is not None and collection.rio.crs is not None:
            region = reproject_geometry(region, region_crs, collection.rio.crs)
        if region is not None and subset.sizes["time"] > 0:
            subset = subset.isel(time=np.flatnonzero(intersects_region(subset, region).values))
        if bands is not None:
            missing = [b for b in bands if b not in subset]
            if missing:
                raise KeyError(f"Collection '{sensor_id}' has no bands {missing}")
            subset = subset[list(bands)]

        return subset


# ---------------------------------------------------------------------------
# EOPF STAC access
# ---------------------------------------------------------------------------

# SCL classification codes for invalid pixels
SCL_INVALID = [0, 1, 3, 7, 8, 9, 10]
# 0: NO_DATA
# 1: SATURATED_DEFECTIVE
# 3: CLOUD_SHADOW
# 7: CLOUD_LOW_PROBABILITY
# 8: CLOUD_MEDIUM_PROBABILITY
# 9: CLOUD_HIGH_PROBABILITY
# 10: THIN_CIRRUS

# Sensor band name -> (reflectance group, EOPF variable)
EOPF_S2_BANDS = {
    'B2': ('r10m', 'b02'),
    'B3': ('r10m', 'b03'),
    'B4': ('r10m', 'b04'),
    'B8': ('r10m', 'b08'),
    'B11': ('r20m', 'b11'),
}


def apply_scl_mask(
    scene: xr.Dataset,
    scl_var: str = 'scl',
    invalid_codes: List[int] = None
) -> xr.Dataset:
    """
    Mask invalid pixels using Scene Classification Layer.

    Parameters
    ----------
    scene : xr.Dataset
        Scene or collection with an SCL variable
    scl_var : str
        Name of SCL variable in dataset
    invalid_codes : list
        SCL codes to mask. Default uses standard cloud/shadow codes.

    Returns
    -------
    xr.Dataset
        Masked data (invalid pixels = NaN) without the SCL variable
    """
    if invalid_codes is None:
        invalid_codes = SCL_INVALID

    if scl_var not in scene:
        logger.warning("%s not found in scene; returning unmasked data", scl_var)
        return scene

    valid_mask = ~scene[scl_var].isin(invalid_codes)
    bands = [v for v in scene.data_vars if v != scl_var]
    masked = scene[bands].where(valid_mask)
    masked.attrs = dict(scene.attrs)
    return masked


class StacImageSource:
    """
    Sentinel-2 L2A scenes from an EOPF STAC catalog.

    Parameters
    ----------
    catalog_url : str
        STAC catalog endpoint URL
    band_assets : dict
        {sensor_band: (reflectance group, EOPF variable)}
    region_crs : str
        CRS of the regions passed to ``fetch``
    include_scl : bool
        Mask cloudy pixels with the Scene Classification Layer
    parallel : bool
        Load scenes concurrently with Dask
    max_cloud_cover : float, optional
        Server-side ``eo:cloud_cover`` pre-filter
    """

    def __init__(
        self,
        catalog_url: str = "https://stac.core.eopf.eodc.eu",
        band_assets: Mapping[str, Tuple[str, str]] = None,
        region_crs: str = "EPSG:4326",
        include_scl: bool = True,
        parallel: bool = True,
        max_cloud_cover: Optional[float] = None,
    ):
        self.catalog_url = catalog_url
        self.band_assets = dict(band_assets or EOPF_S2_BANDS)
        self.region_crs = region_crs
        self.include_scl = include_scl
        self.parallel = parallel
        self.max_cloud_cover = max_cloud_cover
        self._catalog = None

    @property
    def catalog(self):
        """Connected STAC client (opened lazily)."""
        if self._catalog is None:
            import pystac_client
            self._catalog = pystac_client.Client.open(self.catalog_url)
        return self._catalog

    def search(
        self,
        collection: str,
        bbox: List[float],
        start_date: str,
        end_date: str,
        bbox_crs: Optional[str] = None,
    ) -> List[Dict]:
        """
        Search for scenes in the catalog.

        Parameters
        ----------
        collection : str
            STAC collection name
        bbox : list
            Bounding box [west, south, east, north]
        start_date, end_date : str
            Date range in ISO format
        bbox_crs : str, optional
            CRS of ``bbox``. Defaults to ``region_crs``.

        Returns
        -------
        list
            List of STAC item dictionaries
        """
        bbox_crs = bbox_crs or self.region_crs
        if bbox_crs != "EPSG:4326":
            bbox = reproject_bbox(bbox, bbox_crs, "EPSG:4326")

        kwargs = {}
        if self.max_cloud_cover is not None:
            kwargs['query'] = {"eo:cloud_cover": {"lt": self.max_cloud_cover}}

        search = self.catalog.search(
            collections=[collection],
            bbox=bbox,
            datetime=[start_date, end_date],
            **kwargs
        )
        items = list(search.items_as_dicts())
        logger.info("Found %d %s items for %s..%s", len(items), collection, start_date, end_date)
        return items

    def load_scene(
        self,
        item_dict: Dict,
        bbox_ll: List[float],
        bands: Sequence[str],
    ) -> xr.Dataset:
        """
        Load and crop a single scene from Zarr.

        Bands stored at coarser resolutions are resampled (nearest) onto
        the grid of the first requested band.

        Parameters
        ----------
        item_dict : dict
            STAC item dictionary
        bbox_ll : list
            Bounding box in EPSG:4326 [west, south, east, north]
        bands : list
            Sensor band names to load

        Returns
        -------
        xr.Dataset
            Scene with ``time`` and ``cloudy_pixel_percentage``
        """
        unknown = [b for b in bands if b not in self.band_assets]
        if unknown:
            raise KeyError(f"No EOPF asset mapping for bands {unknown}")

        # Extract base path from asset href
        href = item_dict['assets']['SR_10m']['href']
        base_path = href.split('/measurements')[0]

        ds = xr.open_datatree(base_path, engine="zarr", chunks={}, mask_and_scale=True)

        dst_crs = item_dict['properties'].get("proj:code", "EPSG:32632")
        xmin, ymin, xmax, ymax = reproject_bbox(bbox_ll, dst_crs=dst_crs)

        def _crop(node):
            return node.to_dataset().sel(x=slice(xmin, xmax), y=slice(ymax, ymin))

        groups: Dict[str, List[str]] = {}
        for band in bands:
            group, var = self.band_assets[band]
            groups.setdefault(group, []).append(var)

        reference = None
        layers = []
        for group, variables in groups.items():
            layer = _crop(ds["measurements"]["reflectance"][group])[variables]
            if reference is None:
                reference = layer
            else:
                layer = layer.interp(x=reference.x, y=reference.y, method="nearest")
            layers.append(layer)

        if self.include_scl:
            scl = _crop(ds["conditions"]["mask"]["l2a_classification"]["r20m"])
            layers.append(scl.interp(x=reference.x, y=reference.y, method="nearest"))

        merged = xr.merge(layers).compute()
        rename = {var: band for band, (_, var) in self.band_assets.items() if var in merged and band in bands}
        merged = merged.rename(rename)

        if self.include_scl:
            merged = apply_scl_mask(merged)

        merged = merged[list(bands)].astype(np.float64)
        merged.attrs['scale'] = float(abs(reference.x.values[1] - reference.x.values[0]))
        merged = merged.rio.write_crs(dst_crs)

        return create_scene(
            merged,
            item_dict['properties']['datetime'],
            item_dict['properties'].get('eo:cloud_cover', 100.0),
        )

    def fetch(
        self,
        sensor_id: str,
        date_range: Tuple[str, str],
        region,
        bands: Sequence[str],
        region_crs: Optional[str] = None,
    ) -> xr.Dataset:
        """
        Build a collection of scenes covering ``region`` in ``date_range``.

        ``region_crs`` overrides the source's default region CRS. Scenes are
        reindexed onto the grid of the first scene; scenes in a different
        CRS are skipped.
        """
        region_crs = region_crs or self.region_crs
        bbox = list(region.bounds)
        items = self.search(sensor_id, bbox, date_range[0], date_range[1], bbox_crs=region_crs)
        if not items:
            raise ValueError(f"No {sensor_id} scenes for {date_range}")

        bbox_ll = bbox if region_crs == "EPSG:4326" else reproject_bbox(bbox, region_crs, "EPSG:4326")

        if self.parallel:
            delayed_results = [
                dask.delayed(self.load_scene)(item, bbox_ll, bands)
                for item in items
            ]
            scenes = list(dask.compute(*delayed_results))
        else:
            scenes = [self.load_scene(item, bbox_ll, bands) for item in items]

        reference = scenes[0]
        aligned = []
        for scene in scenes:
            if scene.rio.crs != reference.rio.crs:
                logger.warning("Skipping scene %s in %s (collection is in %s)",
                               scene.time.values[0], scene.rio.crs, reference.rio.crs)
                continue
            half = reference.attrs['scale'] / 2
            aligned.append(
                scene.reindex(x=reference.x, y=reference.y, method="nearest", tolerance=half)
            )

        collection = build_collection(aligned)
        collection.attrs['sensor_id'] = sensor_id
        return collection


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class MemorySink:
    """Keep persisted rasters in a dict keyed by destination."""

    def __init__(self):
        self.rasters: Dict[str, object] = {}

    def persist(self, raster, destination: str) -> None:
        self.rasters[destination] = raster


class GeoTiffSink:
    """
    Write rasters as GeoTIFF files.

    Parameters
    ----------
    output_dir : str
        Directory receiving ``<destination>.tif`` files
    """

    def __init__(self, output_dir: str):
        self.output_dir = output_dir

    def persist(self, raster, destination: str) -> str:
        os.makedirs(self.output_dir, exist_ok=True)
        output_file = os.path.join(self.output_dir, f"{destination}.tif")

        if raster.dtype == bool:
            raster = raster.astype(np.uint8)
        elif np.issubdtype(raster.dtype, np.floating):
            raster = raster.rio.write_nodata(np.nan)

        raster.rio.to_raster(output_file)
        logger.info("Saved %s to %s", destination, output_file)
        return output_file
