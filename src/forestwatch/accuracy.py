"""
Accuracy assessment of the land-cover classifier.

Every statistic is derived from the confusion matrix alone, so a matrix
can be built directly from counts without any samples.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.metrics import confusion_matrix

from .sampling import CLASS_COLUMN


logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ConfusionMatrix:
    """
    Square error matrix of actual (rows) versus predicted (columns) classes.

    Parameters
    ----------
    matrix : array-like
        (k, k) counts
    classes : sequence
        Class ids labelling both axes, in matrix order
    """
    matrix: np.ndarray
    classes: Tuple[int, ...]

    def __post_init__(self):
        matrix = np.asarray(self.matrix)
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise ValueError(f"Confusion matrix must be square, got shape {matrix.shape}")
        if len(self.classes) != matrix.shape[0]:
            raise ValueError(
                f"{len(self.classes)} class labels for a {matrix.shape[0]}x{matrix.shape[0]} matrix"
            )
        if (matrix < 0).any():
            raise ValueError("Confusion matrix counts must be non-negative")

        matrix = matrix.astype(np.int64)
        matrix.setflags(write=False)
        object.__setattr__(self, "matrix", matrix)
        object.__setattr__(self, "classes", tuple(int(c) for c in self.classes))

    @classmethod
    def from_predictions(
        cls,
        actual: Sequence[int],
        predicted: Sequence[float],
        classes: Optional[Sequence[int]] = None,
    ) -> "ConfusionMatrix":
        """
        Tally ``matrix[actual][predicted]`` over paired labels.

        ``classes`` defaults to the sorted union of both label sets.
        """
        actual = np.asarray(actual, dtype=np.int64)
        predicted = np.asarray(predicted, dtype=np.float64)
        if np.isnan(predicted).any():
            raise ValueError("Predictions contain missing values")
        predicted = predicted.astype(np.int64)

        if classes is None:
            classes = sorted(set(actual.tolist()) | set(predicted.tolist()))
        classes = [int(c) for c in classes]

        matrix = confusion_matrix(actual, predicted, labels=classes)
        return cls(matrix, tuple(classes))

    @property
    def total(self) -> int:
        return int(self.matrix.sum())

    @property
    def overall_accuracy(self) -> float:
        """trace / total (NaN for an empty matrix)."""
        if self.total == 0:
            return float('nan')
        return float(np.trace(self.matrix) / self.total)

    @property
    def producers_accuracy(self) -> pd.Series:
        """
        Per-class recall: ``matrix[c][c] / row_sum(c)``.

        Classes with no actual samples are NaN.
        """
        rows = self.matrix.sum(axis=1).astype(float)
        diag = np.diag(self.matrix).astype(float)
        with np.errstate(invalid='ignore', divide='ignore'):
            values = np.where(rows > 0, diag / rows, np.nan)
        return pd.Series(values, index=pd.Index(self.classes, name='class'), name='producers_accuracy')

    @property
    def consumers_accuracy(self) -> pd.Series:
        """
        Per-class precision (user's accuracy): ``matrix[c][c] / col_sum(c)``.

        Classes never predicted are NaN.
        """
        cols = self.matrix.sum(axis=0).astype(float)
        diag = np.diag(self.matrix).astype(float)
        with np.errstate(invalid='ignore', divide='ignore'):
            values = np.where(cols > 0, diag / cols, np.nan)
        return pd.Series(values, index=pd.Index(self.classes, name='class'), name='consumers_accuracy')

    @property
    def kappa(self) -> float:
        """
        Cohen's kappa coefficient.

        kappa = (p_obs - p_exp) / (1 - p_exp), with p_exp the sum over
        classes of row_marginal * column_marginal / total**2. Undefined
        (NaN) when the matrix is empty or p_exp == 1.
        """
        total = self.total
        if total == 0:
            return float('nan')

        p_obs = np.trace(self.matrix) / total
        p_exp = float((self.matrix.sum(axis=1) * self.matrix.sum(axis=0)).sum()) / (total * total)
        if np.isclose(p_exp, 1.0):
            return float('nan')
        return float((p_obs - p_exp) / (1 - p_exp))

    def to_dataframe(self) -> pd.DataFrame:
        """Matrix with actual classes as index and predicted as columns."""
        return pd.DataFrame(
            self.matrix,
            index=pd.Index(self.classes, name='actual'),
            columns=pd.Index(self.classes, name='predicted'),
        )

    def summary(self) -> Dict:
        """
        Scalar accuracy statistics.

        Returns
        -------
        dict
            overall_accuracy, kappa, n_samples and per-class producers /
            consumers accuracy
        """
        return {
            'overall_accuracy': self.overall_accuracy,
            'kappa': self.kappa,
            'n_samples': self.total,
            'producers_accuracy': self.producers_accuracy.to_dict(),
            'consumers_accuracy': self.consumers_accuracy.to_dict(),
        }


def assess_accuracy(
    classifier,
    validation: pd.DataFrame,
    classes: Optional[Sequence[int]] = None,
) -> ConfusionMatrix:
    """
    Build the confusion matrix of a classifier on held-out samples.

    Parameters
    ----------
    classifier : TrainedClassifier
        Trained forest
    validation : pd.DataFrame
        Samples with the classifier's bands and ``class_id``
    classes : sequence, optional
        Matrix axis labels. Defaults to the classifier's classes plus any
        extra class present in ``validation``.

    Returns
    -------
    ConfusionMatrix
    """
    actual = validation[CLASS_COLUMN].to_numpy(dtype=np.int64)
    predicted = classifier.predict_samples(validation)

    if classes is None:
        classes = sorted(set(int(c) for c in classifier.classes) | set(actual.tolist()))

    matrix = ConfusionMatrix.from_predictions(actual, predicted, classes)
    logger.info(
        "Validation on %d samples: overall accuracy %.3f, kappa %.3f",
        matrix.total, matrix.overall_accuracy, matrix.kappa,
    )
    return matrix
