"""
Run configuration.

A single immutable ``AnalysisConfig`` is built once per run and handed to
every stage explicitly.
"""

import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional, Tuple


INDEX_BANDS = ("NDVI", "NDMI", "EVI")


@dataclass(frozen=True)
class BandMapping:
    """Sensor band names for the reflectance bands used by the indices."""
    blue: str = "B2"
    green: str = "B3"
    red: str = "B4"
    nir: str = "B8"
    swir1: str = "B11"

    @property
    def reflectance_bands(self) -> Tuple[str, ...]:
        return (self.blue, self.green, self.red, self.nir, self.swir1)


SENTINEL2_BANDS = BandMapping()

DEFAULT_BANDS = SENTINEL2_BANDS.reflectance_bands + INDEX_BANDS


@dataclass(frozen=True)
class AnalysisConfig:
    start_year: int
    end_year: int
    cloud_threshold: float = 10.0
    bands: Tuple[str, ...] = DEFAULT_BANDS
    forest_class_id: int = 1
    train_validation_split_threshold: float = 0.3
    random_forest_tree_count: int = 100
    random_seed: Optional[int] = None
    sample_scale: float = 10.0
    reduce_scale: float = 10.0

    sensor_id: str = "sentinel-2-l2a"
    band_mapping: BandMapping = field(default=SENTINEL2_BANDS)
    trend_band: str = "NDVI"
    fail_fast: bool = False
    tile_size: int = 256
    parallel: bool = True

    def __post_init__(self):
        # Lists from JSON/YAML become tuples so the config stays hashable
        object.__setattr__(self, "bands", tuple(self.bands))

        if self.end_year < self.start_year:
            raise ValueError(
                f"end_year ({self.end_year}) precedes start_year ({self.start_year})"
            )
        if not 0 <= self.cloud_threshold <= 100:
            raise ValueError(f"cloud_threshold must be in [0, 100], got {self.cloud_threshold}")
        if not 0 <= self.train_validation_split_threshold <= 1:
            raise ValueError(
                "train_validation_split_threshold must be in [0, 1], "
                f"got {self.train_validation_split_threshold}"
            )
        if self.random_forest_tree_count < 1:
            raise ValueError("random_forest_tree_count must be at least 1")
        if self.sample_scale <= 0 or self.reduce_scale <= 0:
            raise ValueError("sample_scale and reduce_scale must be positive")
        if not self.bands:
            raise ValueError("bands must not be empty")
        if len(set(self.bands)) != len(self.bands):
            raise ValueError(f"Duplicate band names in {self.bands}")
        if self.tile_size < 1:
            raise ValueError("tile_size must be positive")

    @property
    def years(self) -> Tuple[int, ...]:
        return tuple(range(self.start_year, self.end_year + 1))

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "AnalysisConfig":
        """
        Build a config from a plain mapping.

        Keys may be snake_case or camelCase (``startYear``,
        ``randomForestTreeCount``...). ``band_mapping`` may be given as a
        mapping of its fields.
        """
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in options.items():
            name = _snake_case(key)
            if name not in known:
                raise ValueError(f"Unknown configuration option: {key}")
            kwargs[name] = value

        if isinstance(kwargs.get("band_mapping"), Mapping):
            kwargs["band_mapping"] = BandMapping(**kwargs["band_mapping"])

        return cls(**kwargs)


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()
