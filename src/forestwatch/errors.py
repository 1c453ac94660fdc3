"""
Error kinds raised by the analysis pipeline.

Per-pixel missing data is never raised: it travels as NaN through the
arithmetic and reducers. These exceptions are reserved for conditions that
would otherwise produce a plausible-looking wrong answer.
"""

from typing import Dict, Optional


class ForestWatchError(Exception):
    """Base class for all pipeline errors."""


class EmptyCollectionError(ForestWatchError):
    """No scene survived filtering for the requested year."""

    def __init__(self, year: int, region=None, cloud_threshold: Optional[float] = None):
        self.year = year
        self.region = region
        self.cloud_threshold = cloud_threshold

        msg = f"No scenes left for {year}"
        if cloud_threshold is not None:
            msg += f" with cloudy_pixel_percentage < {cloud_threshold}"
        if region is not None:
            msg += f" inside region bounds {tuple(round(v, 6) for v in region.bounds)}"
        super().__init__(msg)


class InsufficientSamplesError(ForestWatchError):
    """A training class has too few labeled pixels."""

    def __init__(self, class_counts: Dict[int, int], minimum: int = 2):
        self.class_counts = dict(class_counts)
        self.minimum = minimum
        short = {c: n for c, n in self.class_counts.items() if n < minimum}
        if not self.class_counts:
            msg = "No training samples"
        else:
            msg = (f"Classes {sorted(short)} have fewer than {minimum} "
                   f"training samples (counts: {short})")
        super().__init__(msg)


class InsufficientHistoryError(ForestWatchError):
    """Fewer than two years are available for a temporal comparison."""

    def __init__(self, n_years: int, required: int = 2):
        self.n_years = n_years
        self.required = required
        super().__init__(f"Need at least {required} years, got {n_years}")


class GeometryError(ForestWatchError):
    """A polygon is malformed, empty or self-intersecting."""

    def __init__(self, reason: str, class_id: Optional[int] = None):
        self.reason = reason
        self.class_id = class_id
        prefix = f"Invalid polygon for class {class_id}" if class_id is not None else "Invalid polygon"
        super().__init__(f"{prefix}: {reason}")


class MissingValueError(ForestWatchError):
    """An entire output raster would contain no valid pixel."""

    def __init__(self, what: str, context: Optional[Dict] = None):
        self.what = what
        self.context = dict(context or {})
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        msg = f"{what} contains no valid pixels"
        if details:
            msg += f" ({details})"
        super().__init__(msg)
