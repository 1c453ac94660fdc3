"""
Random Forest land-cover classifier.

This module handles:
- Seeded bootstrap training of a forest of Gini decision trees
- Hard-vote prediction (mode of tree votes, ties to the lowest class id)
- Tiled per-pixel classification of whole rasters
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import dask
import numpy as np
import pandas as pd
import xarray as xr
from sklearn.tree import DecisionTreeClassifier
from tqdm import tqdm

from .errors import InsufficientSamplesError, MissingValueError
from .raster import ensure_not_empty
from .sampling import CLASS_COLUMN


logger = logging.getLogger(__name__)

MIN_SAMPLES_PER_CLASS = 2


@dataclass(frozen=True, eq=False)
class TrainedClassifier:
    """Immutable forest of fitted trees over a fixed band order."""
    trees: Tuple[DecisionTreeClassifier, ...]
    classes: np.ndarray
    bands: Tuple[str, ...]
    seed: Optional[int] = None

    @property
    def n_trees(self) -> int:
        return len(self.trees)

    def vote_counts(self, features: np.ndarray) -> np.ndarray:
        """
        Count tree votes per class.

        Parameters
        ----------
        features : np.ndarray
            Shape (N, n_bands), no missing values

        Returns
        -------
        np.ndarray
            Shape (N, n_classes) vote counts, columns ordered as ``classes``
        """
        n = features.shape[0]
        votes = np.zeros((n, len(self.classes)), dtype=np.int32)
        rows = np.arange(n)
        for tree in self.trees:
            labels = tree.predict(features)
            votes[rows, np.searchsorted(self.classes, labels)] += 1
        return votes

    def predict(self, features: np.ndarray) -> np.ndarray:
        """
        Predict the class of each feature row.

        The predicted class is the mode of the tree votes; ties go to the
        lowest class id. Rows with any missing feature give NaN.

        Returns
        -------
        np.ndarray
            Shape (N,) float class ids
        """
        features = np.asarray(features, dtype=np.float64)
        if features.ndim != 2 or features.shape[1] != len(self.bands):
            raise ValueError(
                f"Expected features of shape (N, {len(self.bands)}), got {features.shape}"
            )

        out = np.full(features.shape[0], np.nan)
        valid = np.isfinite(features).all(axis=1)
        if valid.any():
            votes = self.vote_counts(features[valid])
            # argmax returns the first maximum, i.e. the lowest class id
            out[valid] = self.classes[np.argmax(votes, axis=1)]
        return out

    def predict_samples(self, samples: pd.DataFrame) -> np.ndarray:
        """Predict classes for a sample table holding the classifier's bands."""
        return self.predict(samples[list(self.bands)].to_numpy(dtype=np.float64))


def train_random_forest(
    training: pd.DataFrame,
    bands: Sequence[str],
    num_trees: int = 100,
    seed: Optional[int] = None,
    classes: Optional[Iterable[int]] = None,
    variables_per_split: Optional[int] = None,
    min_leaf_population: int = 1,
    bag_fraction: float = 1.0,
    max_nodes: Optional[int] = None,
) -> TrainedClassifier:
    """
    Train a Random Forest on labeled samples.

    Every tree is fit on a bootstrap resample of the training set and
    considers a random subset of bands at each split, choosing the split
    with the lowest Gini impurity. Bootstrap indices and per-tree seeds are
    drawn from one generator seeded with ``seed``, so a fixed seed gives an
    identical forest.

    Parameters
    ----------
    training : pd.DataFrame
        Samples with band columns and ``class_id``
    bands : list
        Input bands, in the order used for prediction
    num_trees : int
        Number of trees
    seed : int, optional
        Random seed. None gives non-reproducible forests.
    classes : iterable, optional
        Every class the map must know about. Defaults to the classes
        present in ``training``.
    variables_per_split : int, optional
        Bands tried per split. Default floor(sqrt(n_bands)).
    min_leaf_population : int
        Minimum training samples per leaf
    bag_fraction : float
        Bootstrap size as a fraction of the training set
    max_nodes : int, optional
        Maximum leaves per tree. Default unlimited.

    Returns
    -------
    TrainedClassifier

    Raises
    ------
    InsufficientSamplesError
        If any class has fewer than 2 training samples
    """
    bands = tuple(bands)
    if num_trees < 1:
        raise ValueError("num_trees must be at least 1")
    if not 0 < bag_fraction <= 1:
        raise ValueError(f"bag_fraction must be in (0, 1], got {bag_fraction}")

    X = training[list(bands)].to_numpy(dtype=np.float64)
    y = training[CLASS_COLUMN].to_numpy(dtype=np.int64)

    if np.isnan(X).any():
        raise ValueError("Training features contain missing values")

    class_ids = sorted(set(int(c) for c in classes)) if classes is not None else sorted(set(y.tolist()))
    unknown = set(y.tolist()) - set(class_ids)
    if unknown:
        raise ValueError(f"Training samples carry classes {sorted(unknown)} not in {class_ids}")

    counts: Dict[int, int] = {c: int((y == c).sum()) for c in class_ids}
    if not counts or any(n < MIN_SAMPLES_PER_CLASS for n in counts.values()):
        raise InsufficientSamplesError(counts, MIN_SAMPLES_PER_CLASS)

    n_samples = len(y)
    n_bag = max(1, int(round(bag_fraction * n_samples)))
    mtry = variables_per_split or max(1, int(np.sqrt(len(bands))))

    rng = np.random.default_rng(seed)
    trees: List[DecisionTreeClassifier] = []

    for _ in range(num_trees):
        idx = rng.integers(0, n_samples, size=n_bag)
        tree = DecisionTreeClassifier(
            criterion='gini',
            max_features=min(mtry, len(bands)),
            min_samples_leaf=min_leaf_population,
            max_leaf_nodes=max_nodes,
            random_state=int(rng.integers(0, 2**31 - 1)),
        )
        tree.fit(X[idx], y[idx])
        trees.append(tree)

    logger.info(
        "Trained Random Forest: trees=%d, bands=%d, samples=%d, classes=%s",
        num_trees, len(bands), n_samples, class_ids,
    )
    return TrainedClassifier(
        trees=tuple(trees),
        classes=np.asarray(class_ids, dtype=np.int64),
        bands=bands,
        seed=seed,
    )


# ---------------------------------------------------------------------------
# Raster prediction
# ---------------------------------------------------------------------------

def _tile_windows(ny: int, nx: int, tile_size: int) -> List[Tuple[int, int, int, int]]:
    return [
        (y0, min(y0 + tile_size, ny), x0, min(x0 + tile_size, nx))
        for y0 in range(0, ny, tile_size)
        for x0 in range(0, nx, tile_size)
    ]


def _fill_features(
    arrays: Sequence[np.ndarray],
    window: Tuple[int, int, int, int],
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Flatten one tile of every band into a (pixels, bands) matrix."""
    y0, y1, x0, x1 = window
    k = (y1 - y0) * (x1 - x0)
    if out is None:
        out = np.empty((k, len(arrays)))
    features = out[:k]
    for j, arr in enumerate(arrays):
        features[:, j] = arr[y0:y1, x0:x1].ravel()
    return features


def _predict_window(classifier, arrays, window) -> np.ndarray:
    y0, y1, x0, x1 = window
    features = _fill_features(arrays, window)
    return classifier.predict(features).reshape(y1 - y0, x1 - x0)


def classify_raster(
    classifier: TrainedClassifier,
    raster: xr.Dataset,
    tile_size: int = 256,
    parallel: bool = False,
    show_progress: bool = False,
) -> xr.DataArray:
    """
    Classify every pixel of a raster.

    The raster is processed in square tiles. Sequentially, one feature
    buffer is reused across tiles; with ``parallel`` the tiles run as Dask
    tasks and are merged by position.

    Parameters
    ----------
    classifier : TrainedClassifier
        Trained forest
    raster : xr.Dataset
        Raster holding the classifier's bands
    tile_size : int
        Tile edge length in pixels
    parallel : bool
        Run tiles concurrently with Dask
    show_progress : bool
        Show progress bar

    Returns
    -------
    xr.DataArray
        ``classification`` band of class ids (NaN = no data)
    """
    missing = [b for b in classifier.bands if b not in raster]
    if missing:
        raise KeyError(f"Raster has no bands {missing}")

    arrays = [raster[b].transpose("y", "x").values for b in classifier.bands]
    ny, nx = arrays[0].shape
    windows = _tile_windows(ny, nx, tile_size)
    output = np.full((ny, nx), np.nan)

    if parallel:
        tasks = [dask.delayed(_predict_window)(classifier, arrays, w) for w in windows]
        for (y0, y1, x0, x1), block in zip(windows, dask.compute(*tasks)):
            output[y0:y1, x0:x1] = block
    else:
        buffer = np.empty((tile_size * tile_size, len(arrays)))
        iterator = tqdm(windows, desc="Classification") if show_progress else windows
        for window in iterator:
            y0, y1, x0, x1 = window
            features = _fill_features(arrays, window, out=buffer)
            output[y0:y1, x0:x1] = classifier.predict(features).reshape(y1 - y0, x1 - x0)

    logger.debug("Classified %d tiles of %dx%d", len(windows), tile_size, tile_size)

    classified = xr.DataArray(
        output,
        coords={"y": raster.y, "x": raster.x},
        dims=("y", "x"),
        name="classification",
    )
    classified.attrs = {k: v for k, v in raster.attrs.items() if k in ("year", "time_start", "scale")}
    if raster.rio.crs is not None:
        classified = classified.rio.write_crs(raster.rio.crs)

    return ensure_not_empty(classified, "Classification", year=raster.attrs.get("year"))


def classify_series(
    classifier: TrainedClassifier,
    composites,
    skipped: Optional[Dict[int, Exception]] = None,
    **kwargs
) -> Dict[int, xr.DataArray]:
    """
    Classify every composite of a series.

    Parameters
    ----------
    classifier : TrainedClassifier
        Trained forest
    composites : CompositeSeries or dict
        {year: composite}
    skipped : dict, optional
        When given, a year whose classification is entirely empty is left
        out of the result and its ``MissingValueError`` recorded here.
        Otherwise the error propagates.
    **kwargs
        Passed to ``classify_raster``

    Returns
    -------
    dict
        {year: classified raster}, ordered by year
    """
    items = composites.composites if hasattr(composites, "composites") else composites
    classified = {}
    for year in sorted(items):
        try:
            classified[year] = classify_raster(classifier, items[year], **kwargs)
        except MissingValueError as e:
            if skipped is None:
                raise
            logger.warning("Skipping classification of %d: %s", year, e)
            skipped[year] = e
            continue
        logger.info("Classified composite %d", year)
    return classified
