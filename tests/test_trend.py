import numpy as np
import pytest

from forestwatch.errors import MissingValueError
from forestwatch.raster import create_raster
from forestwatch.trend import fit_linear_trend, fit_trend, index_time_series

from conftest import CRS, ORIGIN, SCALE, pixel_box, uniform_raster


def ndvi_raster(values, year=None):
    raster = create_raster(
        {'NDVI': np.asarray(values, dtype=float)}, origin=ORIGIN, scale=SCALE, crs=CRS
    )
    if year is not None:
        raster.attrs['year'] = year
    return raster


def test_perfect_line_slope():
    composites = {
        year: uniform_raster({'NDVI': value}, shape=(3, 3))
        for year, value in zip(range(2020, 2024), [0.5, 0.55, 0.6, 0.65])
    }
    fit = fit_linear_trend(composites)

    assert np.allclose(fit['slope'], 0.05)
    assert np.allclose(fit['offset'], 0.5 - 0.05 * 2020)
    assert (fit['n_observations'] == 4).all()
    assert fit.attrs['years'] == [2020, 2021, 2022, 2023]


def test_missing_years_are_skipped_per_pixel():
    composites = {
        2020: ndvi_raster([[0.5, 0.5, np.nan]]),
        2021: ndvi_raster([[0.6, np.nan, np.nan]]),
        2022: ndvi_raster([[0.7, 0.7, 0.4]]),
    }
    fit = fit_linear_trend(composites)

    slope = fit['slope'].values[0]
    assert slope[0] == pytest.approx(0.1)
    assert slope[1] == pytest.approx(0.1)
    assert np.isnan(slope[2])
    assert fit['n_observations'].values[0].tolist() == [3, 2, 1]


def test_single_year_has_no_trend():
    with pytest.raises(MissingValueError):
        fit_linear_trend({2020: ndvi_raster([[0.5, 0.6]])})


def test_block_size_does_not_change_result(rng):
    composites = {year: ndvi_raster(rng.uniform(0, 1, (9, 4))) for year in range(2015, 2021)}

    whole = fit_linear_trend(composites, tile_rows=512)
    blocked = fit_linear_trend(composites, tile_rows=2)

    np.testing.assert_allclose(whole['slope'], blocked['slope'])
    np.testing.assert_allclose(whole['offset'], blocked['offset'])


def test_list_of_composites_is_sorted_by_year():
    composites = [ndvi_raster([[0.7]], 2022), ndvi_raster([[0.5]], 2020)]
    slope = fit_trend(composites)

    assert slope.name == 'slope'
    assert slope.attrs['band'] == 'NDVI'
    assert slope.values[0, 0] == pytest.approx(0.1)


def test_index_time_series_over_region():
    composites = {
        2020: ndvi_raster([[0.2, 0.4], [0.6, np.nan]]),
        2021: ndvi_raster([[0.3, 0.5], [0.7, 0.9]]),
    }
    series = index_time_series(composites, 'NDVI')
    assert series.index.tolist() == [2020, 2021]
    assert series.tolist() == pytest.approx([0.4, 0.6])

    left_column = index_time_series(composites, 'NDVI', region=pixel_box(0, 0, 1, 2))
    assert left_column.tolist() == pytest.approx([0.4, 0.5])
