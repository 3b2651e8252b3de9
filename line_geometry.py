# filename: line_geometry.py
"""
Geometry between the detection and recognition models.

probability map -> mask -> contours -> oriented boxes -> unclipped boxes
-> perspective-rectified line crops -> reading order
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from ocr_contracts import DegenerateGeometryError, MalformedInputError

logger = logging.getLogger(__name__)


def order_points(pts: np.ndarray) -> np.ndarray:
    """Order 4 points as top-left, top-right, bottom-right, bottom-left"""
    pts = np.asarray(pts, dtype=np.float32).reshape(-1, 2)
    if pts.shape[0] != 4:
        raise ValueError(f"Expected 4 points, got {pts.shape[0]}")

    # Sort by x, ties broken by y
    by_x = pts[np.lexsort((pts[:, 1], pts[:, 0]))]
    left = by_x[:2]
    right = by_x[2:]

    # Left pair sorted by y gives TL, BL; right pair gives TR, BR
    tl, bl = left[np.argsort(left[:, 1], kind="stable")]
    tr, br = right[np.argsort(right[:, 1], kind="stable")]

    return np.array([tl, tr, br, bl], dtype=np.float32)


def distance(a: Sequence[float], b: Sequence[float]) -> float:
    return float(math.hypot(float(a[0]) - float(b[0]), float(a[1]) - float(b[1])))


@dataclass
class OrientedBox:
    """Rotated rectangle in OpenCV RotatedRect convention plus its canonical corners"""
    center: Tuple[float, float]
    size: Tuple[float, float]
    angle: float = 0.0
    corners: np.ndarray = field(default=None, repr=False)

    def __post_init__(self):
        self.center = (float(self.center[0]), float(self.center[1]))
        self.size = (float(self.size[0]), float(self.size[1]))
        self.angle = float(self.angle)
        if self.corners is None:
            self.corners = order_points(cv2.boxPoints((self.center, self.size, self.angle)))
        else:
            self.corners = order_points(self.corners)

    @classmethod
    def from_rotated_rect(cls, rect) -> "OrientedBox":
        (cx, cy), (w, h), angle = rect
        return cls((cx, cy), (w, h), angle)

    @property
    def short_side(self) -> float:
        return min(self.size)

    @property
    def area(self) -> float:
        return self.size[0] * self.size[1]

    def scaled_corners(self, rx: float, ry: float) -> np.ndarray:
        """Corners mapped into another resolution by scaling x by rx and y by ry"""
        scaled = self.corners.astype(np.float32).copy()
        scaled[:, 0] *= rx
        scaled[:, 1] *= ry
        return scaled


@dataclass(eq=False)
class RectifiedLine:
    """
    Upright crop of one text line.

    The crop is a scoped resource: use it as a context manager (or call
    ``release``) so the pixel buffer is dropped exactly once.
    """
    pixels: Optional[np.ndarray]
    box: np.ndarray
    source_order: float
    rotated: bool = False
    on_release: Optional[Callable[["RectifiedLine"], None]] = field(default=None, repr=False)
    released: bool = field(default=False, init=False)

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.pixels = None
        if self.on_release is not None:
            self.on_release(self)

    def __enter__(self) -> "RectifiedLine":
        if self.released:
            raise RuntimeError("Rectified line crop was already released")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def binarize(prob_map: np.ndarray, threshold: float = 0.3) -> np.ndarray:
    """Foreground (255) where the probability strictly exceeds the threshold"""
    prob_map = np.asarray(prob_map)
    if prob_map.ndim != 2:
        raise MalformedInputError(f"Probability map must be 2-D, got shape {prob_map.shape}")
    # double precision: float32(0.3) lies above 0.3
    return np.where(prob_map.astype(np.float64) > float(threshold), 255, 0).astype(np.uint8)


def passes_min_side(box: OrientedBox, min_side: float = 3.0) -> bool:
    return box.short_side >= min_side


def extract_boxes(mask: np.ndarray, min_side: float = 3.0, max_candidates: int = 1000) -> List[OrientedBox]:
    """
    Fit a minimum-area rotated rectangle to every outer foreground contour.

    Boxes whose shorter side is below ``min_side`` are noise and dropped.
    Output keeps contour discovery order.
    """
    mask = np.asarray(mask)
    if mask.ndim != 2:
        raise MalformedInputError(f"Mask must be 2-D, got shape {mask.shape}")
    if mask.dtype != np.uint8:
        mask = (mask > 0).astype(np.uint8) * 255

    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    if len(contours) > max_candidates:
        logger.warning(f"Found {len(contours)} contours, keeping the first {max_candidates}")

    boxes = []
    for contour in contours[:max_candidates]:
        box = OrientedBox.from_rotated_rect(cv2.minAreaRect(contour))
        if not passes_min_side(box, min_side):
            logger.debug(f"Dropping box with short side {box.short_side:.1f} < {min_side}")
            continue
        boxes.append(box)
    return boxes


def unclip_box(box: OrientedBox, ratio: float = 1.5) -> OrientedBox:
    """Grow a box by area * ratio / perimeter on every side, keeping center and angle"""
    w, h = box.size
    perimeter = 2.0 * (w + h)
    if perimeter <= 0:
        raise DegenerateGeometryError(f"Cannot unclip a box with zero perimeter: {box.size}")
    d = (w * h * ratio) / perimeter
    return OrientedBox(box.center, (w + 2.0 * d, h + 2.0 * d), box.angle)


def crop_size(corners: np.ndarray) -> Tuple[float, float]:
    """Larger of the opposite edge lengths, horizontally and vertically"""
    tl, tr, br, bl = corners
    width = max(distance(tl, tr), distance(bl, br))
    height = max(distance(tl, bl), distance(tr, br))
    return width, height


def needs_rotation(height: int, width: int, aspect: float = 1.5) -> bool:
    """Tall narrow crops are horizontal text captured sideways"""
    return width > 0 and height / width >= aspect


def calculate_perspective_transform(corners: np.ndarray) -> Tuple[np.ndarray, Tuple[int, int]]:
    """
    Perspective matrix mapping canonical corners onto an upright rectangle.

    Returns the matrix and the integer output size (width, height).
    """
    crop_w, crop_h = crop_size(corners)
    dst_width, dst_height = int(crop_w), int(crop_h)
    if dst_width < 1 or dst_height < 1:
        raise DegenerateGeometryError(f"Degenerate crop size {crop_w:.2f}x{crop_h:.2f}")

    # Destination points (always a perfect rectangle)
    dst_points = np.array([
        [0, 0],                  # top-left
        [crop_w, 0],             # top-right
        [crop_w, crop_h],        # bottom-right
        [0, crop_h]              # bottom-left
    ], dtype=np.float32)

    try:
        transform_matrix = cv2.getPerspectiveTransform(corners.astype(np.float32), dst_points)
    except cv2.error as e:
        raise DegenerateGeometryError(f"Perspective transform failed: {e}") from e

    if not np.all(np.isfinite(transform_matrix)) or abs(np.linalg.det(transform_matrix)) < 1e-12:
        raise DegenerateGeometryError("Perspective transform is singular")

    return transform_matrix, (dst_width, dst_height)


def rectify_box(image: np.ndarray, box: OrientedBox, rx: float = 1.0, ry: float = 1.0,
                rotate_aspect: float = 1.5) -> RectifiedLine:
    """
    Warp the region under ``box`` (mask coordinates) out of the full-resolution image.

    The crop is rotated 90 degrees clockwise when height / width >= rotate_aspect.
    The returned box is the canonical, pre-rotation box in image coordinates.
    """
    corners = order_points(box.scaled_corners(rx, ry))
    transform_matrix, (dst_width, dst_height) = calculate_perspective_transform(corners)

    corrected = cv2.warpPerspective(image, transform_matrix, (dst_width, dst_height),
                                    flags=cv2.INTER_CUBIC, borderMode=cv2.BORDER_REPLICATE)

    rotated = needs_rotation(corrected.shape[0], corrected.shape[1], rotate_aspect)
    if rotated:
        corrected = cv2.rotate(corrected, cv2.ROTATE_90_CLOCKWISE)

    return RectifiedLine(pixels=corrected, box=corners, source_order=float(corners[0][1]), rotated=rotated)


def order_lines(lines: List[RectifiedLine]) -> List[RectifiedLine]:
    """Top-to-bottom by top-left y; ties keep discovery order"""
    return sorted(lines, key=lambda line: line.source_order)
