import numpy as np
import pandas as pd
import pytest

from forestwatch.accuracy import ConfusionMatrix, assess_accuracy
from forestwatch.classifier import TrainedClassifier


def test_two_class_statistics():
    cm = ConfusionMatrix([[8, 2], [1, 9]], (1, 2))

    assert cm.total == 20
    assert cm.overall_accuracy == pytest.approx(0.85)
    assert cm.producers_accuracy.tolist() == pytest.approx([0.8, 0.9])
    assert cm.consumers_accuracy.tolist() == pytest.approx([8 / 9, 9 / 11])
    assert cm.kappa == pytest.approx(0.7)


def test_class_without_actual_samples():
    cm = ConfusionMatrix([[5, 0], [0, 0]], (1, 2))

    assert cm.overall_accuracy == 1.0
    assert cm.producers_accuracy[1] == 1.0
    assert np.isnan(cm.producers_accuracy[2])
    # expected agreement is 1, kappa undefined
    assert np.isnan(cm.kappa)


def test_empty_matrix():
    cm = ConfusionMatrix(np.zeros((2, 2)), (1, 2))
    assert np.isnan(cm.overall_accuracy)
    assert np.isnan(cm.kappa)


def test_matrix_is_read_only():
    cm = ConfusionMatrix([[1, 0], [0, 1]], (1, 2))
    with pytest.raises(ValueError):
        cm.matrix[0, 0] = 5


@pytest.mark.parametrize("matrix, classes", [
    ([[1, 2, 3], [4, 5, 6]], (1, 2)),
    ([[1, 0], [0, 1]], (1, 2, 3)),
    ([[1, -1], [0, 1]], (1, 2)),
])
def test_malformed_matrix_raises(matrix, classes):
    with pytest.raises(ValueError):
        ConfusionMatrix(matrix, classes)


def test_from_predictions():
    cm = ConfusionMatrix.from_predictions([1, 1, 2, 2, 3], [1.0, 2.0, 2.0, 2.0, 1.0])

    assert cm.classes == (1, 2, 3)
    np.testing.assert_array_equal(cm.matrix, [[1, 1, 0], [0, 2, 0], [1, 0, 0]])


def test_from_predictions_rejects_missing_predictions():
    with pytest.raises(ValueError):
        ConfusionMatrix.from_predictions([1, 2], [1.0, np.nan])


def test_to_dataframe_axes():
    df = ConfusionMatrix([[8, 2], [1, 9]], (1, 2)).to_dataframe()

    assert df.index.name == 'actual'
    assert df.columns.name == 'predicted'
    assert df.loc[1, 2] == 2


class _ConstantTree:
    def predict(self, features):
        return np.ones(len(features))


def test_assess_accuracy_on_validation_samples():
    classifier = TrainedClassifier((_ConstantTree(),), np.array([1, 2]), ('B8',))
    validation = pd.DataFrame({'B8': [0.4, 0.5, 0.2], 'class_id': [1, 1, 2]})

    cm = assess_accuracy(classifier, validation)

    np.testing.assert_array_equal(cm.matrix, [[2, 0], [1, 0]])
    summary = cm.summary()
    assert summary['overall_accuracy'] == pytest.approx(2 / 3)
    assert summary['n_samples'] == 3
    assert np.isnan(summary['consumers_accuracy'][2])
