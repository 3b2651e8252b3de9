#!/usr/bin/env python3
"""
Overlay drawing and step-image encoding for text line results.
"""
import base64
import logging
from typing import Dict, Iterable, Sequence, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def draw_line_boxes(image: np.ndarray, boxes: Iterable[np.ndarray],
                    color: Tuple[int, int, int] = (0, 0, 255), thickness: int = 2) -> np.ndarray:
    """Copy of the image with every [TL, TR, BR, BL] box drawn as a closed polygon"""
    annotated = image.copy()
    if annotated.ndim == 2:
        annotated = cv2.cvtColor(annotated, cv2.COLOR_GRAY2BGR)
    for box in boxes:
        points = np.round(np.asarray(box, dtype=np.float32)).astype(np.int32).reshape(-1, 1, 2)
        cv2.polylines(annotated, [points], True, color, thickness)
    return annotated


def encode_image_b64(image: np.ndarray, ext: str = ".png") -> str:
    ok, buffer = cv2.imencode(ext, image)
    if not ok:
        raise ValueError(f"Could not encode image of shape {image.shape} as {ext}")
    return base64.b64encode(buffer.tobytes()).decode("ascii")


def decode_image_b64(data: str, flags: int = cv2.IMREAD_COLOR) -> np.ndarray:
    """Inverse of encode_image_b64; raises ValueError for undecodable payloads"""
    raw = base64.b64decode(data, validate=True)
    image = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), flags)
    if image is None:
        raise ValueError("Payload is not a decodable image")
    return image


def encode_steps(steps: Sequence) -> Dict[str, str]:
    """{step name: base64 PNG} for steps carrying ``name`` and ``image``"""
    step_images = {}
    for step in steps:
        try:
            step_images[step.name] = encode_image_b64(step.image)
        except (ValueError, cv2.error) as e:
            logger.warning(f"Could not encode step {step.name}: {e}")
    return step_images
