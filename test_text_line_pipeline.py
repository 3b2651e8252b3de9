#!/usr/bin/env python3
"""
Tests for pre-processing, line extraction and the end-to-end pipeline run.
"""
import asyncio
import json

import cv2
import numpy as np
import pytest

import text_line_pipeline
from ctc_decoder import load_dictionary
from ocr_contracts import DegenerateGeometryError, MalformedInputError, PipelineError, PipelineSettings
from text_line_pipeline import (PipelineResult, TextLinePipeline, detection_input_size, ensure_bgr, main,
                                preprocess_detection, preprocess_recognition, save_lines)


def band_map(height, width, bands, value=0.9):
    """Probability map with rectangular foreground bands given as (y0, y1, x0, x1)"""
    prob = np.zeros((height, width), dtype=np.float32)
    for y0, y1, x0, x1 in bands:
        prob[y0:y1, x0:x1] = value
    return prob


def recognition_output(indices, num_classes, prob=0.9):
    rest = (1.0 - prob) / (num_classes - 1)
    output = np.full((1, len(indices), num_classes), rest, dtype=np.float32)
    for t, idx in enumerate(indices):
        output[0, t, idx] = prob
    return output


def band_detector(bands):
    def detect(tensor):
        _, _, height, width = tensor.shape
        return band_map(height, width, bands)[np.newaxis, np.newaxis]
    return detect


@pytest.fixture
def page():
    return np.full((64, 128, 3), 200, dtype=np.uint8)


@pytest.fixture
def dictionary():
    return load_dictionary("h\ni")


def capture_contexts(pipeline, monkeypatch):
    contexts = []
    original = pipeline.new_context

    def new_context():
        context = original()
        contexts.append(context)
        return context

    monkeypatch.setattr(pipeline, "new_context", new_context)
    return contexts


@pytest.mark.parametrize("size, expected", [
    ((100, 50), (128, 64)),
    ((2000, 1000), (960, 480)),
    ((10, 10), (32, 32)),
    ((960, 960), (960, 960)),
    ((33, 64), (64, 64)),
])
def test_detection_input_size(size, expected):
    assert detection_input_size(*size) == expected


def test_ensure_bgr_accepts_gray_and_bgra():
    assert ensure_bgr(np.zeros((4, 5), np.uint8)).shape == (4, 5, 3)
    assert ensure_bgr(np.zeros((4, 5, 4), np.uint8)).shape == (4, 5, 3)
    with pytest.raises(MalformedInputError):
        ensure_bgr(np.zeros((4, 5, 2), np.uint8))
    with pytest.raises(MalformedInputError):
        ensure_bgr(np.zeros((0, 0, 3), np.uint8))


def test_preprocess_detection_layout_and_channels():
    image = np.zeros((50, 100, 3), dtype=np.uint8)
    image[:, :] = (255, 128, 0)
    det = preprocess_detection(image)
    assert det.tensor.shape == (1, 3, 64, 128)
    assert det.tensor.dtype == np.float32
    assert det.tensor.flags["C_CONTIGUOUS"]
    assert (det.original_width, det.original_height) == (100, 50)
    assert det.scale == (100 / 128, 50 / 64)
    # planes are B, G, R; blue pairs with mean[2] / std[2]
    assert det.tensor[0, 0, 0, 0] == pytest.approx((1.0 - 0.406) / 0.225, rel=1e-5)
    assert det.tensor[0, 1, 0, 0] == pytest.approx((128 / 255 - 0.456) / 0.224, rel=1e-5)
    assert det.tensor[0, 2, 0, 0] == pytest.approx((0.0 - 0.485) / 0.229, rel=1e-5)


def test_preprocess_recognition_height_and_range():
    crop = np.zeros((10, 20, 3), dtype=np.uint8)
    crop[:, :] = (255, 128, 0)
    tensor = preprocess_recognition(crop)
    assert tensor.shape == (1, 3, 48, 96)
    assert tensor[0, 0].mean() == pytest.approx(1.0)
    assert tensor[0, 2].mean() == pytest.approx(-1.0)
    assert tensor.min() >= -1.0 and tensor.max() <= 1.0


@pytest.mark.parametrize("rows, cols, width", [(7, 10, 69), (20, 50, 120), (48, 5, 5)])
def test_preprocess_recognition_width_rounds_up(rows, cols, width):
    tensor = preprocess_recognition(np.zeros((rows, cols, 3), dtype=np.uint8))
    assert tensor.shape == (1, 3, 48, width)


def test_validate_probability_map_accepts_lower_ranks():
    pipeline = TextLinePipeline()
    prob = band_map(64, 128, [])
    for candidate in (prob, prob[np.newaxis], prob[np.newaxis, np.newaxis]):
        assert pipeline.validate_probability_map(candidate, (128, 64)).shape == (64, 128)


@pytest.mark.parametrize("bad, size", [
    (np.zeros((1, 1, 64, 128), np.float32), (128, 32)),
    (np.zeros((1, 1, 64, 128), np.int32), None),
    (np.zeros((2, 1, 64, 128), np.float32), None),
    (np.zeros((1, 2, 64, 128), np.float32), None),
    (np.zeros((1, 1, 1, 64, 128), np.float32), None),
])
def test_validate_probability_map_rejects_malformed(bad, size):
    with pytest.raises(MalformedInputError):
        TextLinePipeline().validate_probability_map(bad, size)


def test_extract_lines_reading_order_and_scale():
    pipeline = TextLinePipeline()
    context = pipeline.new_context()
    prob = band_map(50, 100, [(30, 38, 10, 60), (10, 18, 20, 80)])
    image = np.zeros((100, 200, 3), dtype=np.uint8)

    lines = pipeline.extract_lines(context, prob, image)

    assert len(lines) == 2
    assert lines[0].source_order < lines[1].source_order
    # upper band is the wider one, boxes are mapped back at twice the mask resolution
    assert lines[0].pixels.shape[1] > lines[1].pixels.shape[1]
    assert lines[0].box[:, 0].mean() == pytest.approx(99, abs=1)
    assert lines[1].box[:, 1].mean() == pytest.approx(67, abs=1)
    assert context.outstanding == 2
    for line in lines:
        line.release()
    context.assert_all_released()


def test_extract_lines_empty_map():
    pipeline = TextLinePipeline()
    context = pipeline.new_context()
    assert pipeline.extract_lines(context, band_map(32, 32, []), np.zeros((32, 32, 3), np.uint8)) == []
    assert context.diagnostics == []


def test_extract_lines_skips_degenerate_region(monkeypatch):
    real_rectify = text_line_pipeline.rectify_box
    calls = []

    def flaky_rectify(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise DegenerateGeometryError("collapsed")
        return real_rectify(*args, **kwargs)

    monkeypatch.setattr(text_line_pipeline, "rectify_box", flaky_rectify)
    pipeline = TextLinePipeline()
    context = pipeline.new_context()
    prob = band_map(50, 100, [(30, 38, 10, 60), (10, 18, 20, 80)])
    lines = pipeline.extract_lines(context, prob, np.zeros((50, 100, 3), np.uint8))

    assert len(lines) == 1
    assert [(d.stage, d.index) for d in context.diagnostics] == [("geometry", 0)]
    lines[0].release()
    context.assert_all_released()


def test_extract_lines_releases_crops_when_ordering_fails(monkeypatch):
    def broken_order(lines):
        raise RuntimeError("boom")

    monkeypatch.setattr(text_line_pipeline, "order_lines", broken_order)
    pipeline = TextLinePipeline()
    context = pipeline.new_context()
    prob = band_map(50, 100, [(30, 38, 10, 60), (10, 18, 20, 80)])
    with pytest.raises(RuntimeError):
        pipeline.extract_lines(context, prob, np.zeros((50, 100, 3), np.uint8))
    assert context.acquired == 2
    assert context.outstanding == 0


def test_debug_mode_records_steps():
    pipeline = TextLinePipeline(PipelineSettings(debug_mode=True))
    context = pipeline.new_context()
    lines = pipeline.extract_lines(context, band_map(50, 100, [(10, 18, 20, 80)]), np.zeros((50, 100, 3), np.uint8))
    assert [step.name for step in context.steps] == ["mask", "boxes"]
    for line in lines:
        line.release()


def test_process_image_end_to_end(page, dictionary, monkeypatch):
    pipeline = TextLinePipeline()
    contexts = capture_contexts(pipeline, monkeypatch)
    seen = []

    def recognizer(tensor):
        seen.append(tensor.shape)
        return recognition_output([1, 1, 0, 2], 4)

    result = pipeline.process_image(page, band_detector([(20, 30, 10, 100)]), recognizer, dictionary)

    assert isinstance(result, PipelineResult)
    assert result.text == "hi"
    assert len(result.boxes) == 1
    assert result.lines[0].mean_confidence == pytest.approx(0.9)
    assert result.lines[0].box is not None
    assert seen[0][:3] == (1, 3, 48)
    assert {"detection_preprocess", "detection_inference", "geometry", "recognition_inference"} <= set(result.timings)
    assert contexts[0].outstanding == 0

    data = json.loads(json.dumps(result.to_dict()))
    assert data["text"] == "hi"
    assert len(data["boxes"][0]) == 4


def test_process_image_uses_configured_dictionary(page, tmp_path):
    path = tmp_path / "keys.txt"
    path.write_text("h\ni\n", encoding="utf-8")
    pipeline = TextLinePipeline(PipelineSettings(dictionary_path=str(path)))
    result = pipeline.process_image(page, band_detector([(20, 30, 10, 100)]),
                                    lambda tensor: recognition_output([2, 1], 4))
    assert result.text == "ih"


def test_process_image_without_dictionary_fails(page):
    with pytest.raises(PipelineError):
        TextLinePipeline().process_image(page, band_detector([]), lambda t: recognition_output([1], 4))


def test_low_confidence_line_is_dropped(page, dictionary):
    result = TextLinePipeline().process_image(page, band_detector([(20, 30, 10, 100)]),
                                              lambda tensor: recognition_output([1, 2], 6, prob=0.28),
                                              dictionary)
    assert result.lines == []
    assert len(result.boxes) == 1
    assert [d.stage for d in result.diagnostics] == ["confidence"]
    assert result.diagnostics[0].text == "hi"


def test_recognition_failure_is_line_scoped(page, dictionary, monkeypatch):
    pipeline = TextLinePipeline()
    contexts = capture_contexts(pipeline, monkeypatch)
    calls = []

    def recognizer(tensor):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("inference server unavailable")
        return recognition_output([1], 4)

    result = pipeline.process_image(page, band_detector([(10, 18, 10, 100), (40, 48, 10, 100)]),
                                    recognizer, dictionary)
    assert result.text == "h"
    assert [(d.stage, d.index) for d in result.diagnostics] == [("recognition", 0)]
    assert contexts[0].acquired == 2
    assert contexts[0].outstanding == 0


def test_malformed_recognition_output_is_reported(page, dictionary):
    result = TextLinePipeline().process_image(page, band_detector([(20, 30, 10, 100)]),
                                              lambda tensor: np.zeros((1, 4), np.float32), dictionary)
    assert result.lines == []
    assert [d.stage for d in result.diagnostics] == ["decode"]


@pytest.mark.parametrize("output", [
    np.zeros((1, 2, 64, 128), np.float32),
    np.zeros((1, 1, 32, 32), np.float32),
    np.zeros((1, 1, 64, 128), np.uint8),
])
def test_malformed_detection_output_fails_the_image(page, dictionary, output):
    with pytest.raises(MalformedInputError):
        TextLinePipeline().process_image(page, lambda tensor: output,
                                         lambda tensor: recognition_output([1], 4), dictionary)


def test_detector_exception_becomes_pipeline_error(page, dictionary):
    def detector(tensor):
        raise RuntimeError("model crashed")

    with pytest.raises(PipelineError, match="Detection inference failed"):
        TextLinePipeline().process_image(page, detector, lambda t: recognition_output([1], 4), dictionary)


class Abort(BaseException):
    pass


def test_every_crop_released_when_run_is_aborted(page, dictionary, monkeypatch):
    pipeline = TextLinePipeline()
    contexts = capture_contexts(pipeline, monkeypatch)

    def recognizer(tensor):
        raise Abort()

    with pytest.raises(Abort):
        pipeline.process_image(page, band_detector([(10, 18, 10, 100), (40, 48, 10, 100)]),
                               recognizer, dictionary)
    assert contexts[0].acquired == 2
    assert contexts[0].outstanding == 0


def test_process_image_async(page, dictionary, monkeypatch):
    pipeline = TextLinePipeline()
    contexts = capture_contexts(pipeline, monkeypatch)
    detect = band_detector([(20, 30, 10, 100)])

    async def detector(tensor):
        return detect(tensor)

    async def recognizer(tensor):
        await asyncio.sleep(0)
        return recognition_output([2, 0, 2], 4)

    result = asyncio.run(pipeline.process_image_async(page, detector, recognizer, dictionary))
    assert result.text == "ii"
    assert contexts[0].outstanding == 0


def test_save_lines_releases_crops(tmp_path):
    pipeline = TextLinePipeline()
    context = pipeline.new_context()
    lines = pipeline.extract_lines(context, band_map(50, 100, [(10, 18, 20, 80)]), np.zeros((50, 100, 3), np.uint8))
    paths = save_lines(lines, tmp_path / "crops")
    assert len(paths) == 1
    assert cv2.imread(paths[0]) is not None
    context.assert_all_released()


def test_cli_writes_report_overlay_and_crops(tmp_path):
    image_path = tmp_path / "page.png"
    map_path = tmp_path / "prob.npy"
    json_path = tmp_path / "report.json"
    overlay_path = tmp_path / "overlay.png"
    cv2.imwrite(str(image_path), np.full((100, 200, 3), 255, np.uint8))
    np.save(map_path, band_map(50, 100, [(30, 38, 10, 60), (10, 18, 20, 80)]))

    code = main([str(image_path), "--probability-map", str(map_path), "--output-dir", str(tmp_path / "crops"),
                 "--json", str(json_path), "--overlay", str(overlay_path)])

    assert code == 0
    report = json.loads(json_path.read_text(encoding="utf-8"))
    assert len(report["lines"]) == 2
    assert len(report["crops"]) == 2
    assert overlay_path.exists()


def test_cli_reports_unreadable_image(tmp_path):
    np.save(tmp_path / "prob.npy", band_map(8, 8, []))
    assert main([str(tmp_path / "missing.png"), "--probability-map", str(tmp_path / "prob.npy")]) == 1


def test_pure_blue_crop_lands_in_first_plane():
    crop = np.zeros((48, 48, 3), dtype=np.uint8)
    crop[:, :, 0] = 255
    tensor = preprocess_recognition(crop)
    assert tensor[0].mean(axis=(1, 2)).tolist() == pytest.approx([1.0, -1.0, -1.0])


def test_rgb_planes_setting_flips_plane_order():
    crop = np.zeros((48, 48, 3), dtype=np.uint8)
    crop[:, :, 0] = 255
    tensor = preprocess_recognition(crop, PipelineSettings(rgb_planes=True))
    assert tensor[0].mean(axis=(1, 2)).tolist() == pytest.approx([-1.0, -1.0, 1.0])
