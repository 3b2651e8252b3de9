# filename: pipeline_server.py
import argparse
import base64
import binascii
import logging
import time
from typing import Any, Dict, List, Optional

import numpy as np
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ctc_decoder import Dictionary, ctc_greedy_decode, passes_confidence
from debug_visualization import decode_image_b64, draw_line_boxes, encode_image_b64, encode_steps
from ocr_contracts import MalformedInputError, PipelineError, PipelineSettings, ensure_json_serializable
from text_line_pipeline import TextLinePipeline, preprocess_detection, preprocess_recognition

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def encode_array(array: np.ndarray) -> Dict[str, Any]:
    array = np.ascontiguousarray(array, dtype=np.float32)
    return {
        "data": base64.b64encode(array.tobytes()).decode("ascii"),
        "shape": list(array.shape),
        "dtype": "float32",
    }


def decode_array(data: str, shape: List[int]) -> np.ndarray:
    """float32 little-endian buffer (base64) reshaped to ``shape``"""
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, TypeError) as e:
        raise MalformedInputError(f"Array payload is not valid base64: {e}") from e
    try:
        dims = [int(d) for d in shape]
    except (TypeError, ValueError) as e:
        raise MalformedInputError(f"Invalid array shape {shape}") from e
    if not dims or any(d <= 0 for d in dims):
        raise MalformedInputError(f"Invalid array shape {shape}")
    if len(raw) % 4:
        raise MalformedInputError(f"Array payload of {len(raw)} bytes is not a float32 buffer")
    array = np.frombuffer(raw, dtype="<f4")
    expected = int(np.prod(dims))
    if array.size != expected:
        raise MalformedInputError(f"Array has {array.size} values, shape {dims} needs {expected}")
    return array.reshape(dims)


def _require(payload: Dict[str, Any], key: str) -> Any:
    if key not in payload:
        raise MalformedInputError(f"Missing field {key!r}")
    return payload[key]


def _decode_image(payload: Dict[str, Any]) -> np.ndarray:
    try:
        return decode_image_b64(_require(payload, "image"))
    except (ValueError, TypeError) as e:
        raise MalformedInputError(f"Invalid image: {e}") from e


def create_app(settings: Optional[PipelineSettings] = None) -> FastAPI:
    """Build the service; pipeline and statistics live on app.state"""
    app = FastAPI(title="Text Line Pipeline Server", version=VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.pipeline = TextLinePipeline(settings or PipelineSettings.from_env())
    app.state.stats = {
        "total_requests": 0,
        "postprocess_times": [],
        "decode_times": [],
        "failed_requests": 0,
    }

    def record(request: Request, key: Optional[str] = None, seconds: float = 0.0) -> None:
        stats = request.app.state.stats
        stats["total_requests"] += 1
        if key is not None:
            stats[key].append(seconds)

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        request.app.state.stats["failed_requests"] += 1
        logger.error(f"{request.url.path} failed: {exc}")
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/settings")
    async def get_settings(request: Request):
        """Get current pipeline settings"""
        pipeline = request.app.state.pipeline
        return {
            **pipeline.settings.to_dict(),
            "dictionary_loaded": pipeline.dictionary is not None,
            "version": VERSION,
        }

    @app.post("/settings")
    async def update_settings(request: Request, settings: dict):
        """Update pipeline settings"""
        pipeline = request.app.state.pipeline
        try:
            applied = pipeline.settings.update(settings)
        except (TypeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid settings: {e}")
        if "dictionary_path" in applied:
            pipeline.dictionary = None
        logger.info(f"Settings updated: {applied}")
        return {"status": "updated", "applied": ensure_json_serializable(applied),
                "settings": await get_settings(request)}

    @app.get("/processing-info")
    async def get_processing_info(request: Request):
        """Describe the pipeline stages and request statistics"""
        stats = request.app.state.stats
        settings = request.app.state.pipeline.settings
        return {
            "pipeline_stages": [
                {"stage": 1, "name": "Detection Preprocessing",
                 "description": f"Resize to multiples of 32 (max side {settings.det_max_side}), mean/std normalization"},
                {"stage": 2, "name": "Binarization",
                 "description": f"Probability > {settings.det_threshold}"},
                {"stage": 3, "name": "Box Extraction",
                 "description": f"Outer contours, minimum-area rectangles, short side >= {settings.min_box_side}"},
                {"stage": 4, "name": "Unclip",
                 "description": f"Expand by area * {settings.unclip_ratio} / perimeter"},
                {"stage": 5, "name": "Rectification",
                 "description": f"Perspective warp, rotate when height/width >= {settings.rotate_aspect}"},
                {"stage": 6, "name": "Reading Order", "description": "Stable sort by top-left y"},
                {"stage": 7, "name": "Recognition Preprocessing",
                 "description": f"Height {settings.rec_height}, normalized to [-1, 1]"},
                {"stage": 8, "name": "CTC Decoding",
                 "description": f"Greedy, blank {settings.blank_index}, keep confidence > {settings.min_confidence}"},
            ],
            "performance_stats": {
                "avg_postprocess_time": np.mean(stats["postprocess_times"]) * 1000 if stats["postprocess_times"] else 0,
                "avg_decode_time": np.mean(stats["decode_times"]) * 1000 if stats["decode_times"] else 0,
                "total_requests": stats["total_requests"],
                "failed_requests": stats["failed_requests"],
            },
        }

    @app.post("/detection/preprocess")
    async def detection_preprocess(request: Request, payload: dict):
        """Image -> detection model input tensor"""
        pipeline = request.app.state.pipeline
        image = _decode_image(payload)
        det_input = preprocess_detection(image, pipeline.settings)
        record(request)
        return {
            "tensor": encode_array(det_input.tensor),
            "width": det_input.width,
            "height": det_input.height,
            "original_width": det_input.original_width,
            "original_height": det_input.original_height,
        }

    @app.post("/detection/postprocess")
    async def detection_postprocess(request: Request, payload: dict):
        """Probability map + original image -> ordered rectified lines"""
        start = time.time()
        pipeline = request.app.state.pipeline
        image = _decode_image(payload)
        prob_map = decode_array(_require(payload, "probability_map"), _require(payload, "shape"))
        detection_size = payload.get("detection_size")
        if detection_size is not None:
            try:
                width, height = (int(v) for v in detection_size)
            except (TypeError, ValueError) as e:
                raise MalformedInputError(f"detection_size must be [width, height], got {detection_size}") from e
            detection_size = (width, height)

        context = pipeline.new_context()
        lines = pipeline.extract_lines(context, prob_map, image, detection_size)
        boxes = [line.box.copy() for line in lines]

        results = []
        try:
            for index, line in enumerate(lines):
                with line:
                    entry = {
                        "index": index,
                        "box": line.box,
                        "rotated": line.rotated,
                        "crop": encode_image_b64(line.pixels),
                    }
                    if payload.get("include_tensors"):
                        tensor = preprocess_recognition(line.pixels, pipeline.settings)
                        entry["recognition_tensor"] = encode_array(tensor)
                    results.append(entry)
        finally:
            for line in lines:
                line.release()
        context.assert_all_released()

        response = {
            "lines": results,
            "boxes": boxes,
            "diagnostics": [d.to_dict() for d in context.diagnostics],
            "timing_ms": context.timings,
        }
        if payload.get("include_overlay"):
            response["overlay"] = encode_image_b64(draw_line_boxes(image, boxes))
        if pipeline.settings.debug_mode:
            response["step_images"] = encode_steps(context.steps)

        record(request, "postprocess_times", time.time() - start)
        return ensure_json_serializable(response)

    @app.post("/recognition/decode")
    async def recognition_decode(request: Request, payload: dict):
        """Recognition model output -> text and mean confidence"""
        start = time.time()
        pipeline = request.app.state.pipeline
        output = decode_array(_require(payload, "tensor"), _require(payload, "shape"))
        if payload.get("dictionary") is not None:
            dictionary = Dictionary(payload["dictionary"])
        else:
            dictionary = pipeline.resolve_dictionary()

        decoded = ctc_greedy_decode(output, dictionary, pipeline.settings.blank_index)
        accepted = passes_confidence(decoded, pipeline.settings.min_confidence)
        if not accepted:
            logger.warning(f"Low confidence line: {decoded.text!r} ({decoded.mean_confidence:.2f})")

        record(request, "decode_times", time.time() - start)
        return {
            "text": decoded.text,
            "mean_confidence": decoded.mean_confidence,
            "accepted": accepted,
        }

    return app


app = create_app()


def main():
    """Run the pipeline server"""
    parser = argparse.ArgumentParser(description="Text Line Geometry & Decoding Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--dictionary", help="Recognition dictionary file (one character per line)")
    parser.add_argument("--threshold", type=float, help="Detection binarization threshold")
    parser.add_argument("--unclip-ratio", type=float, help="Box expansion ratio")
    parser.add_argument("--min-confidence", type=float, help="Minimum mean confidence for a line")
    parser.add_argument("--debug", action="store_true", help="Return intermediate step images")

    args = parser.parse_args()

    settings = PipelineSettings.from_env()
    overrides = {
        "dictionary_path": args.dictionary,
        "det_threshold": args.threshold,
        "unclip_ratio": args.unclip_ratio,
        "min_confidence": args.min_confidence,
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})
    if args.debug:
        settings.debug_mode = True

    logger.info(f"Starting Text Line Pipeline Server v{VERSION} on {args.host}:{args.port}")
    logger.info(f"Settings: {settings.to_dict()}")

    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
