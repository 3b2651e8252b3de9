# filename: text_line_pipeline.py
import argparse
import json
import logging
import math
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Tuple, Union

import cv2
import numpy as np

from ctc_decoder import DecodedLine, Dictionary, ctc_greedy_decode, load_dictionary_file, passes_confidence
from debug_visualization import draw_line_boxes
from line_geometry import (RectifiedLine, binarize, extract_boxes, order_lines, rectify_box,
                           unclip_box)
from ocr_contracts import (DETECTION_OUTPUT_SPEC, DegenerateGeometryError, MalformedInputError,
                           NumpyEncoder, PipelineError, PipelineSettings, RECOGNITION_INPUT_SPEC,
                           ResourceNotReleasedError, ensure_json_serializable)

logger = logging.getLogger(__name__)


@dataclass
class ProcessingStep:
    """Data class for storing intermediate images for debugging"""
    name: str
    image: np.ndarray
    description: str
    params: Dict[str, Any] = None


@dataclass
class DetectionInput:
    tensor: np.ndarray
    width: int
    height: int
    original_width: int
    original_height: int

    @property
    def scale(self) -> Tuple[float, float]:
        """(rx, ry) from detection resolution back to the original image"""
        return self.original_width / self.width, self.original_height / self.height


@dataclass
class LineDiagnostic:
    """Why a region or line did not make it into the output"""
    stage: str
    index: int
    reason: str
    text: Optional[str] = None
    mean_confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


class DetectionBackend(Protocol):
    def __call__(self, tensor: np.ndarray) -> np.ndarray: ...


class RecognitionBackend(Protocol):
    def __call__(self, tensor: np.ndarray) -> np.ndarray: ...


class AsyncRecognitionBackend(Protocol):
    def __call__(self, tensor: np.ndarray) -> Awaitable[np.ndarray]: ...


def ensure_bgr(image: np.ndarray) -> np.ndarray:
    """Accept gray, BGR or BGRA uint8 images and return 3 channels"""
    if not isinstance(image, np.ndarray) or image.size == 0:
        raise MalformedInputError("Image is empty or not a numpy array")
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.ndim == 3 and image.shape[2] == 3:
        return image
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if image.ndim == 3 and image.shape[2] == 1:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    raise MalformedInputError(f"Unsupported image shape {image.shape}")


def normalize_planar(image: np.ndarray, mean, std, rgb_planes: bool = False) -> np.ndarray:
    """
    (pixel / 255 - mean) / std per channel of a BGR image, laid out as [1, C, H, W].

    ``mean`` and ``std`` are given in R, G, B order. Planes come out as
    B, G, R unless ``rgb_planes`` is set.
    """
    img = image.astype(np.float32) / 255.0
    mean = np.asarray(mean, dtype=np.float32)[::-1]
    std = np.asarray(std, dtype=np.float32)[::-1]
    planar = ((img - mean) / std).transpose(2, 0, 1)
    if rgb_planes:
        planar = planar[::-1]
    return np.ascontiguousarray(planar[np.newaxis], dtype=np.float32)


def detection_input_size(width: int, height: int, max_side: int = 960) -> Tuple[int, int]:
    """Limit the longer side to max_side, then round both sides up to a multiple of 32"""
    w, h = float(width), float(height)
    if max_side and max(w, h) > max_side:
        ratio = max_side / w if w > h else max_side / h
        w, h = w * ratio, h * ratio
    new_w = max(int(math.ceil(w / 32)) * 32, 32)
    new_h = max(int(math.ceil(h / 32)) * 32, 32)
    return new_w, new_h


def preprocess_detection(image: np.ndarray, settings: Optional[PipelineSettings] = None) -> DetectionInput:
    settings = settings or PipelineSettings()
    image = ensure_bgr(image)
    original_height, original_width = image.shape[:2]
    width, height = detection_input_size(original_width, original_height, settings.det_max_side)
    resized = cv2.resize(image, (width, height), interpolation=cv2.INTER_LINEAR)
    tensor = normalize_planar(resized, settings.det_mean, settings.det_std, settings.rgb_planes)
    return DetectionInput(tensor, width, height, original_width, original_height)


def preprocess_recognition(pixels: np.ndarray, settings: Optional[PipelineSettings] = None) -> np.ndarray:
    """Resize a line crop to the recognition height and normalize to [-1, 1]"""
    settings = settings or PipelineSettings()
    pixels = ensure_bgr(pixels)
    rows, cols = pixels.shape[:2]
    target_h = settings.rec_height
    target_w = int(math.ceil(cols * target_h / rows))
    resized = cv2.resize(pixels, (target_w, target_h), interpolation=cv2.INTER_LINEAR)
    tensor = normalize_planar(resized, settings.rec_mean, settings.rec_std, settings.rgb_planes)
    return RECOGNITION_INPUT_SPEC.validate(tensor, {2: target_h, 3: target_w})


class PipelineContext:
    """
    State of one pipeline run: settings, timings, diagnostics and the
    bookkeeping of rectified line crops handed out and released.
    """

    def __init__(self, settings: PipelineSettings):
        self.settings = settings
        self.timings: Dict[str, float] = {}
        self.diagnostics: List[LineDiagnostic] = []
        self.steps: List[ProcessingStep] = []
        self.acquired = 0
        self.released = 0

    def track(self, line: RectifiedLine) -> RectifiedLine:
        self.acquired += 1
        line.on_release = self._on_release
        return line

    def _on_release(self, line: RectifiedLine) -> None:
        self.released += 1

    @property
    def outstanding(self) -> int:
        return self.acquired - self.released

    def assert_all_released(self) -> None:
        if self.outstanding:
            raise ResourceNotReleasedError(f"{self.outstanding} line crop(s) were never released")

    def add_time(self, name: str, seconds: float) -> None:
        self.timings[name] = self.timings.get(name, 0.0) + seconds * 1000.0

    @contextmanager
    def timed(self, name: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            self.add_time(name, time.perf_counter() - start)

    def report(self, diagnostic: LineDiagnostic) -> None:
        self.diagnostics.append(diagnostic)

    def add_step(self, name: str, image: np.ndarray, description: str, params: Dict = None) -> None:
        """Keep an intermediate image when debug mode is on"""
        if self.settings.debug_mode:
            self.steps.append(ProcessingStep(name, image.copy(), description, params or {}))


@dataclass
class PipelineResult:
    lines: List[DecodedLine]
    boxes: List[np.ndarray]
    diagnostics: List[LineDiagnostic] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return "\n".join(line.text for line in self.lines)

    def to_dict(self) -> Dict[str, Any]:
        return ensure_json_serializable({
            "text": self.text,
            "lines": [line.to_dict() for line in self.lines],
            "boxes": [box.tolist() for box in self.boxes],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "timing_ms": self.timings,
        })


class TextLinePipeline:
    """Sequential geometry and decoding pipeline around two external inference calls"""

    def __init__(self, settings: Optional[PipelineSettings] = None, dictionary: Optional[Dictionary] = None):
        self.settings = settings or PipelineSettings()
        self.dictionary = dictionary

    def new_context(self) -> PipelineContext:
        return PipelineContext(self.settings)

    def resolve_dictionary(self, dictionary: Optional[Dictionary] = None) -> Dictionary:
        if dictionary is not None:
            return dictionary
        if self.dictionary is None:
            if not self.settings.dictionary_path:
                raise PipelineError("No dictionary given and no dictionary_path configured")
            self.dictionary = load_dictionary_file(self.settings.dictionary_path)
        return self.dictionary

    def validate_probability_map(self, prob_map: np.ndarray,
                                 detection_size: Optional[Tuple[int, int]] = None) -> np.ndarray:
        """Check the detection output against its descriptor and return the 2-D map"""
        if isinstance(prob_map, np.ndarray) and prob_map.ndim in (2, 3):
            prob_map = prob_map.reshape((1,) * (4 - prob_map.ndim) + prob_map.shape)
        expected = None
        if detection_size is not None:
            width, height = detection_size
            expected = {2: int(height), 3: int(width)}
        return DETECTION_OUTPUT_SPEC.validate(prob_map, expected)[0, 0]

    def extract_lines(self, context: PipelineContext, prob_map: np.ndarray, image: np.ndarray,
                      detection_size: Optional[Tuple[int, int]] = None) -> List[RectifiedLine]:
        """
        Turn a detection probability map into rectified line crops in reading order.

        Degenerate regions are skipped and reported; a malformed map fails the
        whole image. Every returned crop is tracked by ``context``.
        """
        settings = context.settings
        image = ensure_bgr(image)
        prob = self.validate_probability_map(prob_map, detection_size)

        mask_h, mask_w = prob.shape
        rx = image.shape[1] / mask_w
        ry = image.shape[0] / mask_h

        lines: List[RectifiedLine] = []
        try:
            with context.timed("geometry"):
                mask = binarize(prob, settings.det_threshold)
                context.add_step("mask", mask, f"Probability map > {settings.det_threshold}")

                boxes = extract_boxes(mask, settings.min_box_side, settings.max_candidates)
                for index, box in enumerate(boxes):
                    try:
                        expanded = unclip_box(box, settings.unclip_ratio)
                        line = rectify_box(image, expanded, rx, ry, settings.rotate_aspect)
                    except DegenerateGeometryError as e:
                        logger.warning(f"Skipping region {index}: {e}")
                        context.report(LineDiagnostic("geometry", index, str(e)))
                        continue
                    lines.append(context.track(line))

                lines = order_lines(lines)
        except BaseException:
            for line in lines:
                line.release()
            raise

        if settings.debug_mode:
            context.add_step("boxes", draw_line_boxes(image, [line.box for line in lines]),
                             f"{len(lines)} rectified lines", {"scale": (rx, ry)})
        logger.info(f"Extracted {len(lines)} line(s) from {len(boxes)} contour box(es), scale=({rx:.3f}, {ry:.3f})")
        return lines

    def _decode_line(self, context: PipelineContext, index: int, line: RectifiedLine,
                     output: np.ndarray, dictionary: Dictionary) -> Optional[DecodedLine]:
        try:
            decoded = ctc_greedy_decode(output, dictionary, context.settings.blank_index)
        except MalformedInputError as e:
            logger.error(f"Line {index}: {e}")
            context.report(LineDiagnostic("decode", index, str(e)))
            return None
        decoded.box = line.box
        if not passes_confidence(decoded, context.settings.min_confidence):
            logger.warning(f"Low confidence line skipped: {decoded.text!r} ({decoded.mean_confidence:.2f})")
            context.report(LineDiagnostic("confidence", index, "below confidence threshold",
                                          decoded.text, decoded.mean_confidence))
            return None
        return decoded

    def _inference_failed(self, context: PipelineContext, index: int, error: Exception) -> None:
        logger.error(f"Recognition failed for line {index}: {error}")
        context.report(LineDiagnostic("recognition", index, f"{type(error).__name__}: {error}"))

    def recognize_line(self, context: PipelineContext, index: int, line: RectifiedLine,
                       recognizer: RecognitionBackend, dictionary: Dictionary) -> Optional[DecodedLine]:
        """Pre-process, recognize and decode one line; the crop is released on every path"""
        with line:
            tensor = preprocess_recognition(line.pixels, context.settings)
            start = time.perf_counter()
            try:
                output = recognizer(tensor)
            except Exception as e:
                self._inference_failed(context, index, e)
                return None
            finally:
                context.add_time("recognition_inference", time.perf_counter() - start)
            return self._decode_line(context, index, line, output, dictionary)

    async def recognize_line_async(self, context: PipelineContext, index: int, line: RectifiedLine,
                                   recognizer: AsyncRecognitionBackend,
                                   dictionary: Dictionary) -> Optional[DecodedLine]:
        with line:
            tensor = preprocess_recognition(line.pixels, context.settings)
            start = time.perf_counter()
            try:
                output = await recognizer(tensor)
            except Exception as e:
                self._inference_failed(context, index, e)
                return None
            finally:
                context.add_time("recognition_inference", time.perf_counter() - start)
            return self._decode_line(context, index, line, output, dictionary)

    def _detect(self, context: PipelineContext, image: np.ndarray,
                detector: DetectionBackend) -> Tuple[DetectionInput, np.ndarray]:
        with context.timed("detection_preprocess"):
            det_input = preprocess_detection(image, context.settings)
        with context.timed("detection_inference"):
            try:
                output = detector(det_input.tensor)
            except PipelineError:
                raise
            except Exception as e:
                raise PipelineError(f"Detection inference failed: {e}") from e
        return det_input, output

    def _finish(self, context: PipelineContext, lines: List[RectifiedLine],
                decoded: List[DecodedLine], boxes: List[np.ndarray]) -> PipelineResult:
        context.assert_all_released()
        timing = {k: round(v, 2) for k, v in context.timings.items()}
        logger.info(f"Recognized {len(decoded)}/{len(lines)} line(s); timing_ms={timing}")
        return PipelineResult(decoded, boxes, list(context.diagnostics), dict(context.timings))

    def process_image(self, image: np.ndarray, detector: DetectionBackend, recognizer: RecognitionBackend,
                      dictionary: Optional[Dictionary] = None) -> PipelineResult:
        """Run the whole image: detection, line geometry, then one recognition call per line"""
        dictionary = self.resolve_dictionary(dictionary)
        context = self.new_context()
        image = ensure_bgr(image)
        det_input, det_output = self._detect(context, image, detector)
        lines = self.extract_lines(context, det_output, image, (det_input.width, det_input.height))
        boxes = [line.box.copy() for line in lines]

        decoded = []
        try:
            for index, line in enumerate(lines):
                result = self.recognize_line(context, index, line, recognizer, dictionary)
                if result is not None:
                    decoded.append(result)
        finally:
            for line in lines:
                line.release()
        return self._finish(context, lines, decoded, boxes)

    async def process_image_async(self, image: np.ndarray, detector, recognizer: AsyncRecognitionBackend,
                                  dictionary: Optional[Dictionary] = None) -> PipelineResult:
        """Same as process_image, awaiting the inference collaborators"""
        dictionary = self.resolve_dictionary(dictionary)
        context = self.new_context()
        image = ensure_bgr(image)

        with context.timed("detection_preprocess"):
            det_input = preprocess_detection(image, context.settings)
        with context.timed("detection_inference"):
            try:
                det_output = await detector(det_input.tensor)
            except PipelineError:
                raise
            except Exception as e:
                raise PipelineError(f"Detection inference failed: {e}") from e

        lines = self.extract_lines(context, det_output, image, (det_input.width, det_input.height))
        boxes = [line.box.copy() for line in lines]

        decoded = []
        try:
            for index, line in enumerate(lines):
                result = await self.recognize_line_async(context, index, line, recognizer, dictionary)
                if result is not None:
                    decoded.append(result)
        finally:
            for line in lines:
                line.release()
        return self._finish(context, lines, decoded, boxes)


def save_lines(lines: List[RectifiedLine], output_dir: Union[str, Path]) -> List[str]:
    """Write each crop as line_NNN.png and release it"""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for index, line in enumerate(lines):
        with line:
            path = output_dir / f"line_{index:03d}.png"
            if not cv2.imwrite(str(path), line.pixels):
                raise OSError(f"Could not write {path}")
            paths.append(str(path))
    return paths


def main(argv: Optional[List[str]] = None) -> int:
    """Run the geometry half of the pipeline offline on a saved probability map"""
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Text line geometry: probability map -> rectified line crops")
    parser.add_argument("image", help="Original image")
    parser.add_argument("--probability-map", required=True, help="Detection output saved with numpy.save (.npy)")
    parser.add_argument("--output-dir", help="Directory for rectified line crops")
    parser.add_argument("--json", dest="json_out", help="Write boxes and diagnostics as JSON")
    parser.add_argument("--overlay", help="Write the image with line boxes drawn")
    parser.add_argument("--threshold", type=float, help="Binarization threshold")
    parser.add_argument("--unclip-ratio", type=float, help="Box expansion ratio")
    parser.add_argument("--min-box-side", type=float, help="Minimum box side in mask pixels")
    args = parser.parse_args(argv)

    settings = PipelineSettings.from_env()
    overrides = {"det_threshold": args.threshold, "unclip_ratio": args.unclip_ratio,
                 "min_box_side": args.min_box_side}
    settings.update({k: v for k, v in overrides.items() if v is not None})

    image = cv2.imread(args.image, cv2.IMREAD_COLOR)
    if image is None:
        logger.error(f"Cannot read image {args.image}")
        return 1

    pipeline = TextLinePipeline(settings)
    context = pipeline.new_context()
    try:
        prob_map = np.load(args.probability_map)
        lines = pipeline.extract_lines(context, prob_map, image)
    except (MalformedInputError, OSError, ValueError) as e:
        logger.error(f"Failed: {e}")
        return 1

    boxes = [line.box.copy() for line in lines]
    report = {
        "image": args.image,
        "lines": [{"box": line.box, "rotated": line.rotated, "size": line.pixels.shape[:2]} for line in lines],
        "diagnostics": [d.to_dict() for d in context.diagnostics],
        "timing_ms": context.timings,
    }

    if args.overlay:
        cv2.imwrite(args.overlay, draw_line_boxes(image, boxes))
    if args.output_dir:
        report["crops"] = save_lines(lines, args.output_dir)
    for line in lines:
        line.release()
    context.assert_all_released()

    serialized = json.dumps(ensure_json_serializable(report), cls=NumpyEncoder, indent=2)
    if args.json_out:
        Path(args.json_out).write_text(serialized, encoding="utf-8")
    else:
        print(serialized)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
