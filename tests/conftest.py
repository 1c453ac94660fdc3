import numpy as np
import pytest
from shapely.geometry import box

from forestwatch.raster import build_collection, create_raster, create_scene


ORIGIN = (500000.0, 9990000.0)
SCALE = 10.0
CRS = "EPSG:32737"

FOREST = {'B2': 0.03, 'B3': 0.05, 'B4': 0.03, 'B8': 0.40, 'B11': 0.15}
AGRICULTURE = {'B2': 0.08, 'B3': 0.10, 'B4': 0.12, 'B8': 0.25, 'B11': 0.25}


def pixel_box(col0, row0, col1, row1):
    """Polygon covering pixel columns col0..col1-1 and rows row0..row1-1."""
    x0, y0 = ORIGIN
    return box(x0 + col0 * SCALE, y0 - row1 * SCALE, x0 + col1 * SCALE, y0 - row0 * SCALE)


def uniform_raster(values, shape=(4, 4), **kwargs):
    """Raster whose bands are constant arrays of the given values."""
    bands = {name: np.full(shape, v, dtype=float) for name, v in values.items()}
    return create_raster(bands, origin=ORIGIN, scale=SCALE, crs=CRS, **kwargs)


def landscape(shape, loss_block=None, noise=0.0, rng=None):
    """
    Left half forest, right half agriculture.

    ``loss_block`` = (row0, row1, col0, col1) is painted as agriculture.
    """
    ny, nx = shape
    cover = np.zeros(shape, dtype=bool)
    cover[:, : nx // 2] = True
    if loss_block is not None:
        r0, r1, c0, c1 = loss_block
        cover[r0:r1, c0:c1] = False

    bands = {}
    for name in FOREST:
        values = np.where(cover, FOREST[name], AGRICULTURE[name])
        if noise and rng is not None:
            values = values + rng.normal(0, noise, shape)
        bands[name] = values
    return create_raster(bands, origin=ORIGIN, scale=SCALE, crs=CRS)


def make_collection(rasters_by_date, cloud=None):
    """Collection from {iso_date: raster}; cloud defaults to 0 for every scene."""
    cloud = cloud or {}
    scenes = [
        create_scene(raster, date, cloud.get(date, 0.0))
        for date, raster in rasters_by_date.items()
    ]
    return build_collection(scenes)


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def forest_raster():
    return uniform_raster(FOREST)


@pytest.fixture
def study_area():
    """Region covering the whole 20x20 test landscape."""
    return pixel_box(0, 0, 20, 20)
