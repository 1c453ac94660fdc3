import numpy as np
import pandas as pd
import pytest

from forestwatch.classifier import TrainedClassifier, classify_raster, classify_series, train_random_forest
from forestwatch.errors import InsufficientSamplesError, MissingValueError
from forestwatch.raster import create_raster

from conftest import AGRICULTURE, CRS, FOREST, ORIGIN, SCALE, landscape


BANDS = ('B4', 'B8', 'B11')


def _clusters(rng, n=30):
    """Class 1 scattered around FOREST, class 2 around AGRICULTURE."""
    forest = rng.normal([FOREST[b] for b in BANDS], 0.01, (n, len(BANDS)))
    other = rng.normal([AGRICULTURE[b] for b in BANDS], 0.01, (n, len(BANDS)))
    df = pd.DataFrame(np.vstack([forest, other]), columns=list(BANDS))
    df['class_id'] = [1] * n + [2] * n
    return df


class _ConstantTree:
    def __init__(self, label):
        self.label = label

    def predict(self, features):
        return np.full(len(features), self.label)


def test_separable_classes_are_learned(rng):
    training = _clusters(rng)
    classifier = train_random_forest(training, BANDS, num_trees=10, seed=1)

    assert classifier.n_trees == 10
    assert list(classifier.classes) == [1, 2]
    predicted = classifier.predict_samples(training)
    assert (predicted == training['class_id'].to_numpy()).all()


def test_same_seed_gives_same_forest(rng):
    training = _clusters(rng)
    features = rng.uniform(0, 0.5, (200, len(BANDS)))

    a = train_random_forest(training, BANDS, num_trees=5, seed=3)
    b = train_random_forest(training, BANDS, num_trees=5, seed=3)

    np.testing.assert_array_equal(a.predict(features), b.predict(features))
    np.testing.assert_array_equal(a.vote_counts(features), b.vote_counts(features))


def test_class_with_one_sample_raises(rng):
    training = _clusters(rng).iloc[:31]
    with pytest.raises(InsufficientSamplesError) as excinfo:
        train_random_forest(training, BANDS, num_trees=3, seed=0)
    assert excinfo.value.class_counts == {1: 30, 2: 1}


def test_declared_class_without_samples_raises(rng):
    with pytest.raises(InsufficientSamplesError):
        train_random_forest(_clusters(rng), BANDS, num_trees=3, seed=0, classes=[1, 2, 3])


def test_empty_training_set_raises():
    empty = pd.DataFrame(columns=list(BANDS) + ['class_id'])
    with pytest.raises(InsufficientSamplesError, match="No training samples"):
        train_random_forest(empty, BANDS, num_trees=3)


def test_missing_training_feature_raises(rng):
    training = _clusters(rng)
    training.loc[0, 'B8'] = np.nan
    with pytest.raises(ValueError):
        train_random_forest(training, BANDS, num_trees=3)


def test_vote_tie_goes_to_lowest_class():
    classifier = TrainedClassifier(
        trees=(_ConstantTree(2), _ConstantTree(1), _ConstantTree(3), _ConstantTree(2), _ConstantTree(1)),
        classes=np.array([1, 2, 3]),
        bands=('a',),
    )
    assert classifier.predict(np.zeros((3, 1))).tolist() == [1.0, 1.0, 1.0]


def test_missing_feature_predicts_missing():
    classifier = TrainedClassifier((_ConstantTree(2),), np.array([1, 2]), ('a', 'b'))
    out = classifier.predict(np.array([[0.1, np.nan], [0.1, 0.2]]))

    assert np.isnan(out[0])
    assert out[1] == 2


def test_feature_shape_mismatch_raises():
    classifier = TrainedClassifier((_ConstantTree(1),), np.array([1]), ('a', 'b'))
    with pytest.raises(ValueError):
        classifier.predict(np.zeros((4, 3)))


@pytest.fixture
def trained(rng):
    return train_random_forest(_clusters(rng), BANDS, num_trees=7, seed=11)


def test_sequential_and_parallel_tiles_agree(trained):
    # 3-pixel tiles do not divide the 7x5 grid
    raster = landscape((7, 5), loss_block=(0, 2, 0, 1))
    nir = raster['B8'].values.copy()
    nir[3, 1] = np.nan
    raster['B8'] = (("y", "x"), nir)
    raster.attrs['year'] = 2021

    sequential = classify_raster(trained, raster, tile_size=3, parallel=False)
    parallel = classify_raster(trained, raster, tile_size=3, parallel=True)

    np.testing.assert_array_equal(sequential.values, parallel.values)
    assert np.isnan(sequential.values[3, 1])
    assert sequential.values[6, 0] == 1
    assert sequential.values[0, 0] == 2
    assert sequential.values[0, 4] == 2


def test_classified_raster_keeps_grid_metadata(trained):
    raster = landscape((4, 4))
    raster.attrs['year'] = 2020
    classified = classify_raster(trained, raster, tile_size=2, show_progress=True)

    assert classified.name == 'classification'
    assert classified.dims == ('y', 'x')
    assert classified.attrs['year'] == 2020
    assert classified.attrs['scale'] == SCALE
    assert classified.rio.crs.to_epsg() == 32737
    np.testing.assert_array_equal(classified.x, raster.x)


def test_empty_raster_raises(trained):
    empty = create_raster(
        {b: np.full((2, 2), np.nan) for b in BANDS}, origin=ORIGIN, scale=SCALE, crs=CRS
    )
    with pytest.raises(MissingValueError):
        classify_raster(trained, empty)


def test_classify_series_orders_years(trained):
    composites = {2022: landscape((4, 4)), 2020: landscape((4, 4))}
    classified = classify_series(trained, composites, tile_size=4)
    assert list(classified) == [2020, 2022]


def test_classify_series_records_empty_year(trained):
    empty = create_raster(
        {b: np.full((4, 4), np.nan) for b in BANDS}, origin=ORIGIN, scale=SCALE, crs=CRS
    )
    skipped = {}
    classified = classify_series(trained, {2020: landscape((4, 4)), 2021: empty}, skipped=skipped)

    assert list(classified) == [2020]
    assert isinstance(skipped[2021], MissingValueError)


def test_classify_series_without_skip_record_raises(trained):
    empty = create_raster(
        {b: np.full((4, 4), np.nan) for b in BANDS}, origin=ORIGIN, scale=SCALE, crs=CRS
    )
    with pytest.raises(MissingValueError):
        classify_series(trained, {2020: landscape((4, 4)), 2021: empty})
