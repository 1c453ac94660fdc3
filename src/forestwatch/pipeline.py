"""
End-to-end land-cover change analysis.

composites -> samples -> Random Forest -> validation -> classified series
-> forest loss / index trend -> area statistics
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import pandas as pd
import xarray as xr

from .accuracy import ConfusionMatrix, assess_accuracy
from .area import AreaSummary, area_by_class, sum_area
from .change import detect_forest_loss
from .classifier import TrainedClassifier, classify_series, train_random_forest
from .compositing import CompositeSeries, build_composite_series
from .config import AnalysisConfig
from .errors import InsufficientHistoryError
from .io import ImageSource, RasterSink
from .raster import get_temporal_info, reproject_geometry
from .sampling import CLASS_COLUMN, LabeledPolygon, extract_samples, split_samples
from .trend import fit_trend, index_time_series


logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """Everything produced by one ``run_analysis`` call."""
    config: AnalysisConfig
    composites: CompositeSeries
    samples: pd.DataFrame
    training: pd.DataFrame
    validation: pd.DataFrame
    classifier: TrainedClassifier
    confusion_matrix: ConfusionMatrix
    classified: Dict[int, xr.DataArray]
    forest_loss: xr.DataArray
    trend: xr.DataArray
    loss_area: AreaSummary
    class_area: pd.Series
    index_series: pd.Series
    persisted: Dict[str, object] = field(default_factory=dict)

    @property
    def skipped_years(self) -> Dict[int, Exception]:
        return self.composites.skipped

    def summary(self) -> Dict:
        return {
            'years': self.composites.years,
            'skipped_years': sorted(self.composites.skipped),
            'n_samples': len(self.samples),
            'n_training': len(self.training),
            'n_validation': len(self.validation),
            **self.confusion_matrix.summary(),
            'loss_pixels': self.loss_area.pixel_count,
            'loss_area_ha': self.loss_area.area_ha,
        }


def run_analysis(
    config: AnalysisConfig,
    source: ImageSource,
    polygons: Sequence[LabeledPolygon],
    region,
    sink: Optional[RasterSink] = None,
    region_crs: Optional[str] = None,
) -> AnalysisResult:
    """
    Run the full change analysis for one region.

    Parameters
    ----------
    config : AnalysisConfig
        Run configuration
    source : ImageSource
        Imagery provider
    polygons : list
        Labeled training polygons in the imagery CRS
    region : shapely geometry
        Region of interest
    sink : RasterSink, optional
        Receives the loss raster, the trend raster and every classified year
    region_crs : str, optional
        CRS of ``region``; it is reprojected to the imagery CRS. Without it
        the region is taken to be in the imagery CRS.

    Returns
    -------
    AnalysisResult

    Raises
    ------
    InsufficientHistoryError
        If fewer than two years could be composited and classified. A year
        whose classification is empty is skipped like a failed composite
        unless ``config.fail_fast`` is set.
    """
    m = config.band_mapping
    composite_bands = tuple(dict.fromkeys(config.bands + (config.trend_band,)))
    date_range = (f"{config.start_year}-01-01", f"{config.end_year}-12-31")

    logger.info("Fetching %s imagery for %s..%s", config.sensor_id, *date_range)
    collection = source.fetch(
        config.sensor_id, date_range, region, list(m.reflectance_bands), region_crs=region_crs
    )

    if region_crs is not None and collection.rio.crs is not None:
        region = reproject_geometry(region, region_crs, collection.rio.crs)

    if collection.sizes.get("time", 0) > 0:
        info = get_temporal_info(collection)
        logger.info("Collection: %d scenes, years %s", info['n_scenes'], info['years'])

    # 1. Annual composites
    composites = build_composite_series(
        collection,
        config.years,
        region=region,
        cloud_threshold=config.cloud_threshold,
        band_mapping=m,
        bands=composite_bands,
        parallel=config.parallel,
        fail_fast=config.fail_fast,
    )
    if len(composites) < 2:
        raise InsufficientHistoryError(len(composites))

    # 2. Samples from the most recent composite
    samples = extract_samples(composites.latest, polygons, config.bands, config.sample_scale)
    training, validation = split_samples(
        samples, config.train_validation_split_threshold, seed=config.random_seed
    )

    # 3. Classifier and its validation
    classes = sorted(int(c) for c in samples[CLASS_COLUMN].unique())
    classifier = train_random_forest(
        training,
        config.bands,
        num_trees=config.random_forest_tree_count,
        seed=config.random_seed,
        classes=classes,
    )
    matrix = assess_accuracy(classifier, validation)

    # 4. Classification of every year
    classified = classify_series(
        classifier,
        composites,
        skipped=None if config.fail_fast else composites.skipped,
        tile_size=config.tile_size,
        parallel=config.parallel,
    )
    for year in composites.skipped:
        composites.composites.pop(year, None)
    if len(classified) < 2:
        raise InsufficientHistoryError(len(classified))

    # 5. Change, trend and area
    loss = detect_forest_loss(classified, config.forest_class_id)
    trend = fit_trend(composites, config.trend_band)
    loss_area = sum_area(loss, region, scale=config.reduce_scale)
    class_area = area_by_class(classified[composites.years[-1]], region)
    series = index_time_series(composites, config.trend_band, region)

    result = AnalysisResult(
        config=config,
        composites=composites,
        samples=samples,
        training=training,
        validation=validation,
        classifier=classifier,
        confusion_matrix=matrix,
        classified=classified,
        forest_loss=loss,
        trend=trend,
        loss_area=loss_area,
        class_area=class_area,
        index_series=series,
    )

    if sink is not None:
        first, last = composites.years[0], composites.years[-1]
        outputs = {
            f"deforestation_{first}-{last}": loss,
            f"{config.trend_band.lower()}_trend_slope": trend,
        }
        for year, raster in classified.items():
            outputs[f"classification_{year}"] = raster

        for destination, raster in outputs.items():
            result.persisted[destination] = sink.persist(raster, destination)

    logger.info(
        "Analysis done: OA %.3f, kappa %.3f, forest loss %.2f ha",
        matrix.overall_accuracy, matrix.kappa, loss_area.area_ha,
    )
    return result
