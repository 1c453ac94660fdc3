"""
ForestWatch: Multi-Year Land-Cover Change Analysis
==================================================

Modules:
    raster: Raster, scene and collection data model
    indices: NDVI, NDMI and EVI computation
    compositing: Cloud-filtered annual median composites
    sampling: Training polygons, pixel sampling and train/validation split
    classifier: Random Forest training and tiled raster classification
    accuracy: Confusion matrix, overall accuracy, kappa, producer's accuracy
    change: Forest-loss detection between the first and last years
    trend: Per-pixel linear trend of an index
    area: Masked area in hectares
    io: Imagery sources and raster sinks
    pipeline: End-to-end analysis
"""

import logging

from .config import AnalysisConfig, BandMapping, SENTINEL2_BANDS

from .errors import (
    ForestWatchError,
    EmptyCollectionError,
    InsufficientSamplesError,
    InsufficientHistoryError,
    GeometryError,
    MissingValueError,
)

from .raster import (
    create_raster,
    create_scene,
    build_collection,
    get_temporal_info,
)

from .indices import (
    compute_ndvi,
    compute_ndmi,
    compute_evi,
    add_spectral_indices,
)

from .compositing import (
    filter_scenes,
    build_annual_composite,
    build_composite_series,
    CompositeSeries,
)

from .sampling import (
    LabeledPolygon,
    load_training_polygons,
    extract_samples,
    split_samples,
)

from .classifier import TrainedClassifier, train_random_forest, classify_raster, classify_series

from .accuracy import ConfusionMatrix, assess_accuracy

from .change import (
    detect_forest_loss,
    compute_change_statistics,
    transition_matrix,
    multi_year_loss_analysis,
)

from .trend import fit_linear_trend, fit_trend, index_time_series

from .area import AreaSummary, pixel_area, sum_area, area_by_class

from .io import InMemoryImageSource, StacImageSource, MemorySink, GeoTiffSink

from .pipeline import AnalysisResult, run_analysis

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"
