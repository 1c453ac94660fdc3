"""
Training sample extraction.

This module handles:
- Labeled ground-truth polygons and their validation
- Pixel sampling of a composite inside the polygons
- Random train/validation partitioning of the sample set
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import shapely
import xarray as xr
from shapely.geometry import MultiPolygon, Polygon
from shapely.validation import explain_validity

from .errors import GeometryError
from .raster import grid_centers, pixel_index


logger = logging.getLogger(__name__)

CLASS_COLUMN = 'class_id'
LABEL_COLUMN = 'label'
RANDOM_COLUMN = 'random'


@dataclass(frozen=True)
class LabeledPolygon:
    """Ground-truth region with its land-cover class."""
    geometry: object
    class_id: int
    label: str = ""

    def __post_init__(self):
        geom = self.geometry
        if not isinstance(geom, (Polygon, MultiPolygon)):
            raise GeometryError(
                f"expected Polygon or MultiPolygon, got {type(geom).__name__}",
                self.class_id,
            )
        if geom.is_empty:
            raise GeometryError("geometry is empty", self.class_id)
        if not geom.is_valid:
            raise GeometryError(explain_validity(geom), self.class_id)


def polygons_from_geodataframe(
    gdf: "gpd.GeoDataFrame",
    class_column: str = 'class',
    label_column: Optional[str] = 'label',
) -> List[LabeledPolygon]:
    """
    Convert a GeoDataFrame of training areas to labeled polygons.

    Parameters
    ----------
    gdf : GeoDataFrame
        Training polygons, already in the composite's CRS
    class_column : str
        Column holding the integer class id
    label_column : str, optional
        Column holding the class name

    Returns
    -------
    list
        One LabeledPolygon per row
    """
    if class_column not in gdf.columns:
        raise KeyError(f"Column '{class_column}' not found in training polygons")

    polygons = []
    for _, row in gdf.iterrows():
        label = str(row[label_column]) if label_column and label_column in gdf.columns else ""
        polygons.append(LabeledPolygon(row.geometry, int(row[class_column]), label))
    return polygons


def load_training_polygons(
    path: str,
    target_crs: Optional[str] = None,
    class_column: str = 'class',
    label_column: Optional[str] = 'label',
) -> List[LabeledPolygon]:
    """
    Load training polygons from any vector format geopandas can read.

    Parameters
    ----------
    path : str
        Path to shapefile, GeoPackage or GeoJSON
    target_crs : str, optional
        CRS of the composites; polygons are reprojected to it

    Returns
    -------
    list
        Validated LabeledPolygon objects
    """
    import geopandas as gpd

    gdf = gpd.read_file(path)
    if target_crs is not None and gdf.crs is not None and gdf.crs != target_crs:
        gdf = gdf.to_crs(target_crs)

    return polygons_from_geodataframe(gdf, class_column, label_column)


def extract_samples(
    composite: xr.Dataset,
    polygons: Sequence[LabeledPolygon],
    bands: Sequence[str],
    scale: Optional[float] = None,
) -> pd.DataFrame:
    """
    Sample band values at every pixel centre inside the training polygons.

    Pixel centres are laid on a grid of size ``scale`` sharing the
    composite's top-left corner; each centre reads the composite pixel it
    falls in. Centres on a polygon edge count as inside. Pixels with any
    missing band value are dropped.

    Parameters
    ----------
    composite : xr.Dataset
        Composite to sample
    polygons : list
        LabeledPolygon ground truth in the composite's CRS
    bands : list
        Bands to read
    scale : float, optional
        Sampling grid size. Defaults to the composite's own scale.

    Returns
    -------
    pd.DataFrame
        Columns: bands..., class_id, label, x, y
    """
    bands = list(bands)
    missing = [b for b in bands if b not in composite]
    if missing:
        raise KeyError(f"Composite has no bands {missing}")

    values = [composite[b].transpose("y", "x").values for b in bands]
    frames = []

    for polygon in polygons:
        xs, ys = grid_centers(composite, scale, polygon.geometry.bounds)
        if len(xs) == 0 or len(ys) == 0:
            continue

        X, Y = np.meshgrid(xs, ys)
        X, Y = X.ravel(), Y.ravel()
        inside = shapely.intersects_xy(polygon.geometry, X, Y)
        X, Y = X[inside], Y[inside]

        rows, cols, on_grid = pixel_index(composite, X, Y)
        rows, cols, X, Y = rows[on_grid], cols[on_grid], X[on_grid], Y[on_grid]

        frame = pd.DataFrame({b: v[rows, cols] for b, v in zip(bands, values)})
        frame[CLASS_COLUMN] = polygon.class_id
        frame[LABEL_COLUMN] = polygon.label
        frame['x'] = X
        frame['y'] = Y
        frames.append(frame)

    if not frames:
        columns = bands + [CLASS_COLUMN, LABEL_COLUMN, 'x', 'y']
        return pd.DataFrame(columns=columns)

    samples = pd.concat(frames, ignore_index=True)
    n_before = len(samples)
    samples = samples.dropna(subset=bands).reset_index(drop=True)
    samples[CLASS_COLUMN] = samples[CLASS_COLUMN].astype(int)

    logger.info(
        "Extracted %d samples from %d polygons (%d dropped with missing values)",
        len(samples), len(polygons), n_before - len(samples),
    )
    return samples


def add_random_column(
    samples: pd.DataFrame,
    seed: Optional[int] = None,
    column: str = RANDOM_COLUMN,
) -> pd.DataFrame:
    """Attach a uniform [0, 1) random value to every sample."""
    rng = np.random.default_rng(seed)
    out = samples.copy()
    out[column] = rng.random(len(out))
    return out


def split_samples(
    samples: pd.DataFrame,
    threshold: float = 0.3,
    seed: Optional[int] = None,
    column: str = RANDOM_COLUMN,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Partition samples into training and validation sets.

    Each sample's random value decides its side: ``random >= threshold``
    goes to training, ``random < threshold`` to validation. A random column
    already present is reused.

    Returns
    -------
    tuple
        (training, validation)
    """
    if not 0 <= threshold <= 1:
        raise ValueError(f"threshold must be in [0, 1], got {threshold}")

    if column not in samples.columns:
        samples = add_random_column(samples, seed, column)

    is_training = samples[column] >= threshold
    training = samples[is_training].reset_index(drop=True)
    validation = samples[~is_training].reset_index(drop=True)

    logger.info("Split %d samples: %d training, %d validation",
                len(samples), len(training), len(validation))
    return training, validation
