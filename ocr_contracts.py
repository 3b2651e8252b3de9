# filename: ocr_contracts.py
import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for text line pipeline failures"""


class MalformedInputError(PipelineError, ValueError):
    """Top-level input has the wrong rank, extents or element type; the whole image fails"""


class DegenerateGeometryError(PipelineError):
    """A single region collapsed (zero area, singular transform); the region is skipped"""


class ResourceNotReleasedError(PipelineError):
    """A rectified line crop outlived its owning scope"""


# Custom JSON encoder to handle numpy types and other non-serializable objects
class NumpyEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        elif isinstance(obj, np.floating):
            return float(obj)
        elif isinstance(obj, np.bool_):
            return bool(obj)
        elif isinstance(obj, np.ndarray):
            return obj.tolist()
        elif hasattr(obj, 'tolist'):  # Handle other numpy-like objects
            return obj.tolist()
        return super().default(obj)


def ensure_json_serializable(obj):
    """Recursively convert numpy types and tuples to JSON serializable types"""
    if isinstance(obj, dict):
        return {str(key): ensure_json_serializable(value) for key, value in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [ensure_json_serializable(item) for item in obj]
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif hasattr(obj, 'tolist'):
        return obj.tolist()
    else:
        return obj


@dataclass(frozen=True)
class TensorSpec:
    """
    Descriptor of a tensor crossing the pipeline boundary.

    ``extents`` gives one entry per axis; ``None`` marks a dynamic axis.
    ``kind`` is the numpy dtype kind the elements must have ('f' for float).
    """
    name: str
    extents: Tuple[Optional[int], ...]
    kind: str = "f"
    dtype: str = "float32"

    @property
    def rank(self) -> int:
        return len(self.extents)

    def validate(self, array: Any, expected: Optional[Dict[int, int]] = None) -> np.ndarray:
        """
        Check rank, fixed extents and element kind, then return the array as ``dtype``.

        ``expected`` pins dynamic axes to concrete sizes, e.g. ``{2: height, 3: width}``.
        """
        if not isinstance(array, np.ndarray):
            raise MalformedInputError(f"{self.name}: expected a numpy array, got {type(array).__name__}")
        if array.ndim != self.rank:
            raise MalformedInputError(
                f"{self.name}: expected rank {self.rank} {self.describe()}, got shape {tuple(array.shape)}"
            )
        if array.dtype.kind != self.kind:
            raise MalformedInputError(f"{self.name}: expected {self.dtype} elements, got {array.dtype}")
        for axis, extent in enumerate(self.extents):
            if extent is not None and array.shape[axis] != extent:
                raise MalformedInputError(
                    f"{self.name}: axis {axis} must be {extent}, got shape {tuple(array.shape)}"
                )
            if array.shape[axis] == 0:
                raise MalformedInputError(f"{self.name}: axis {axis} is empty, got shape {tuple(array.shape)}")
        for axis, extent in (expected or {}).items():
            if array.shape[axis] != extent:
                raise MalformedInputError(
                    f"{self.name}: axis {axis} must match declared size {extent}, got shape {tuple(array.shape)}"
                )
        return array.astype(self.dtype, copy=False)

    def describe(self) -> str:
        return "[" + ", ".join("?" if e is None else str(e) for e in self.extents) + "]"


# Detection model output: [batch, channel, height, width] probability map
DETECTION_OUTPUT_SPEC = TensorSpec("detection_output", (1, 1, None, None))
# Recognition model output: [batch, sequence, classes]
RECOGNITION_OUTPUT_SPEC = TensorSpec("recognition_output", (1, None, None))
# Recognition model input: [batch, channels, 48, width]
RECOGNITION_INPUT_SPEC = TensorSpec("recognition_input", (1, 3, None, None))


def _parse_env(raw: str, current: Any) -> Any:
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, tuple):
        return tuple(float(v) for v in raw.split(","))
    return raw


@dataclass
class PipelineSettings:
    """Contract constants shared with the external detection and recognition models"""
    # Detection post-processing
    det_threshold: float = 0.3
    min_box_side: float = 3.0
    unclip_ratio: float = 1.5
    max_candidates: int = 1000
    rotate_aspect: float = 1.5
    # Detection pre-processing
    det_max_side: int = 960
    det_mean: Tuple[float, float, float] = (0.485, 0.456, 0.406)
    det_std: Tuple[float, float, float] = (0.229, 0.224, 0.225)
    # Recognition pre-processing
    rec_height: int = 48
    rec_mean: Tuple[float, float, float] = (0.5, 0.5, 0.5)
    rec_std: Tuple[float, float, float] = (0.5, 0.5, 0.5)
    rgb_planes: bool = False
    # Decoding
    blank_index: int = 0
    min_confidence: float = 0.3
    dictionary_path: Optional[str] = None
    debug_mode: bool = False

    ENV_PREFIX = "TEXTLINE_"

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if not 0.0 <= self.det_threshold <= 1.0:
            raise ValueError(f"det_threshold must be within [0, 1], got {self.det_threshold}")
        if self.min_box_side < 0:
            raise ValueError(f"min_box_side must be non-negative, got {self.min_box_side}")
        if self.unclip_ratio < 0:
            raise ValueError(f"unclip_ratio must be non-negative, got {self.unclip_ratio}")
        if self.max_candidates < 1:
            raise ValueError(f"max_candidates must be positive, got {self.max_candidates}")
        if self.rotate_aspect <= 0:
            raise ValueError(f"rotate_aspect must be positive, got {self.rotate_aspect}")
        if self.det_max_side < 32:
            raise ValueError(f"det_max_side must be at least 32, got {self.det_max_side}")
        if self.rec_height < 1:
            raise ValueError(f"rec_height must be positive, got {self.rec_height}")
        for name in ("det_mean", "det_std", "rec_mean", "rec_std"):
            value = getattr(self, name)
            if len(value) != 3:
                raise ValueError(f"{name} needs one value per channel, got {value}")
        if any(s == 0 for s in self.det_std + self.rec_std):
            raise ValueError("normalization std values must be non-zero")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "PipelineSettings":
        """Build settings from TEXTLINE_* environment variables, e.g. TEXTLINE_UNCLIP_RATIO=2.0"""
        environ = os.environ if environ is None else environ
        settings = cls()
        overrides = {}
        for f in fields(cls):
            raw = environ.get(cls.ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                overrides[f.name] = _parse_env(raw, getattr(settings, f.name))
            except ValueError:
                logger.warning(f"Ignoring invalid {cls.ENV_PREFIX}{f.name.upper()}={raw!r}")
        if overrides:
            try:
                settings.update(overrides)
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring {cls.ENV_PREFIX}* overrides, keeping defaults: {e}")
            else:
                logger.info(f"Settings overridden from environment: {sorted(overrides)}")
        return settings

    def update(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """Apply known keys from ``values``; unknown keys are ignored. Returns the applied subset."""
        known = {f.name: f for f in fields(self)}
        applied = {}
        previous = asdict(self)
        try:
            for key, value in values.items():
                if key not in known:
                    logger.debug(f"Ignoring unknown setting {key!r}")
                    continue
                current = getattr(self, key)
                if isinstance(current, bool):
                    value = _parse_env(value, current) if isinstance(value, str) else bool(value)
                elif isinstance(current, int) and not isinstance(current, bool):
                    value = int(value)
                elif isinstance(current, float):
                    value = float(value)
                elif isinstance(current, tuple):
                    value = tuple(float(v) for v in value)
                elif key == "dictionary_path" and value is not None:
                    value = str(value)
                setattr(self, key, value)
                applied[key] = value
            self.validate()
        except (TypeError, ValueError):
            for key, value in previous.items():
                setattr(self, key, value)
            raise
        return applied

    def to_dict(self) -> Dict[str, Any]:
        return ensure_json_serializable(asdict(self))
