import numpy as np
import pytest

from forestwatch.indices import add_spectral_indices, compute_evi, compute_ndmi, compute_ndvi
from forestwatch.raster import create_raster

from conftest import FOREST, ORIGIN, make_collection, uniform_raster


def test_ndvi_and_ndmi_values(forest_raster):
    ndvi = compute_ndvi(forest_raster)
    ndmi = compute_ndmi(forest_raster)

    assert np.allclose(ndvi, (0.40 - 0.03) / (0.40 + 0.03))
    assert np.allclose(ndmi, (0.40 - 0.15) / (0.40 + 0.15))


def test_evi_formula(forest_raster):
    evi = compute_evi(forest_raster)
    expected = 2.5 * (0.40 - 0.03) / (0.40 + 6 * 0.03 - 7.5 * 0.03 + 1)
    assert np.allclose(evi, expected)


def test_normalized_differences_bounded_for_non_negative_inputs(rng):
    bands = {name: rng.uniform(0, 1, (8, 8)) for name in FOREST}
    raster = create_raster(bands, origin=ORIGIN)
    out = add_spectral_indices(raster)

    for index in ('NDVI', 'NDMI'):
        values = out[index].values
        assert np.all(values >= -1) and np.all(values <= 1)


def test_zero_denominator_gives_nan():
    # pixel 0: NIR + RED == 0 and NIR + SWIR1 == 0; pixel 1: EVI denominator == 0
    raster = create_raster(
        {
            'B2': [[0.0, 0.2]],
            'B3': [[0.0, 0.0]],
            'B4': [[0.0, 0.0]],
            'B8': [[0.0, 0.5]],
            'B11': [[0.0, 0.1]],
        },
        origin=ORIGIN,
    )
    out = add_spectral_indices(raster)

    assert np.isnan(out['NDVI'].values[0, 0])
    assert np.isnan(out['NDMI'].values[0, 0])
    assert out['NDVI'].values[0, 1] == pytest.approx(1.0)
    assert np.isnan(out['EVI'].values[0, 1])
    assert not np.isinf(out['EVI'].values).any()


def test_indices_are_idempotent(forest_raster):
    once = add_spectral_indices(forest_raster)
    twice = add_spectral_indices(once)

    for index in ('NDVI', 'NDMI', 'EVI'):
        assert once[index].values.tobytes() == twice[index].values.tobytes()


def test_indices_apply_to_collections(forest_raster):
    collection = make_collection({'2021-03-01': forest_raster, '2021-06-01': forest_raster})
    out = add_spectral_indices(collection)

    assert out['NDVI'].dims == ('time', 'y', 'x')
    assert out.sizes['time'] == 2


def test_missing_band_raises():
    raster = uniform_raster({'B4': 0.1, 'B8': 0.3})
    with pytest.raises(KeyError):
        add_spectral_indices(raster)
