import numpy as np
import pytest

from forestwatch.area import area_by_class, pixel_area, sum_area
from forestwatch.raster import create_raster

from conftest import CRS, ORIGIN, SCALE, pixel_box


def mask(values, origin=ORIGIN, scale=SCALE, crs=CRS):
    raster = create_raster({'mask': np.asarray(values, dtype=float)}, origin=origin, scale=scale, crs=crs)
    return raster['mask']


def test_hundred_ten_metre_pixels_is_one_hectare():
    summary = sum_area(mask(np.ones((10, 10))))

    assert summary.pixel_count == 100
    assert summary.area_m2 == pytest.approx(10_000)
    assert summary.area_ha == pytest.approx(1.0)


def test_false_and_missing_pixels_are_not_counted():
    summary = sum_area(mask([[1, 0], [np.nan, 1]]))
    assert summary.pixel_count == 2


def test_region_restricts_the_sum():
    summary = sum_area(mask(np.ones((10, 10))), region=pixel_box(0, 0, 5, 2))
    assert summary.pixel_count == 10
    assert summary.area_ha == pytest.approx(0.1)


def test_constant_pixel_area():
    summary = sum_area(mask(np.ones((2, 2))), pixel_area_provider=900.0)
    assert summary.area_m2 == pytest.approx(3600)


def test_coarser_reduce_scale():
    summary = sum_area(mask(np.ones((4, 4))), scale=2 * SCALE)
    assert summary.pixel_count == 4
    assert summary.area_m2 == pytest.approx(1600)


def test_geographic_pixel_area_shrinks_towards_the_pole():
    # 0.001 degree cells from the equator to 60N
    values = np.ones((2, 1))
    equator = pixel_area(mask(values, origin=(0.0, 0.002), scale=0.001, crs="EPSG:4326"))
    north = pixel_area(mask(values, origin=(0.0, 60.002), scale=0.001, crs="EPSG:4326"))

    assert equator.values[0, 0] == pytest.approx(111.32 * 110.57, rel=0.01)
    assert north.values[0, 0] / equator.values[0, 0] == pytest.approx(0.5, rel=0.02)


def test_area_by_class():
    classified = mask([[1, 1, 2], [2, 2, np.nan]])
    areas = area_by_class(classified)

    assert areas.index.tolist() == [1, 2]
    assert areas[1] == pytest.approx(0.02)
    assert areas[2] == pytest.approx(0.03)
