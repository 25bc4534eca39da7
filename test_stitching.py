"""
Tests for grid-region extraction and seam-blended compositing.
"""

import numpy as np
import pytest

from conftest import decode_png, encode_png, solid_png
from pixelcanvas.models.canvas import ExtractionBounds
from pixelcanvas.services.stitching import (
    BACKGROUND_SIZE,
    CELL_SIZE,
    EXTRACTION_SIZE,
    GRID_SIZE,
    InvalidCellError,
    StitchingError,
    _render_stitching_mask,
    calculate_extraction_bounds,
    composite_result,
    create_cell_mask,
    create_stitching_mask,
    extract_region,
    validate_cell,
)

CENTER = EXTRACTION_SIZE // 2


def test_grid_constants_are_consistent():
    assert GRID_SIZE * CELL_SIZE == BACKGROUND_SIZE
    assert EXTRACTION_SIZE == 256


def test_center_cell_bounds():
    bounds = calculate_extraction_bounds(7, 7)
    assert bounds == ExtractionBounds(start_x=352, start_y=352, end_x=608, end_y=608, offset_x=0, offset_y=0)
    assert bounds.to_dict() == {
        "startX": 352,
        "startY": 352,
        "endX": 608,
        "endY": 608,
        "offsetX": 0,
        "offsetY": 0,
    }


def test_cell_8_8_bounds():
    bounds = calculate_extraction_bounds(8, 8)
    assert bounds.box == (416, 416, 672, 672)
    assert (bounds.offset_x, bounds.offset_y) == (0, 0)


def test_left_edge_cell_is_pushed_inward():
    bounds = calculate_extraction_bounds(0, 7)
    assert bounds.start_x == 0
    assert bounds.end_x == EXTRACTION_SIZE
    assert bounds.offset_x == 96
    assert bounds.offset_y == 0


def test_second_column_needs_a_smaller_shift():
    bounds = calculate_extraction_bounds(1, 7)
    assert bounds.start_x == 0
    assert bounds.offset_x == 32


@pytest.mark.parametrize(
    "cell, expected_box",
    [
        ((15, 7), (768, 352, 1024, 608)),
        ((7, 0), (352, 0, 608, 256)),
        ((7, 15), (352, 768, 608, 1024)),
    ],
)
def test_edge_cells(cell, expected_box):
    bounds = calculate_extraction_bounds(*cell)
    assert bounds.box == expected_box


@pytest.mark.parametrize(
    "cell, expected_box",
    [
        ((0, 0), (0, 0, 256, 256)),
        ((15, 0), (768, 0, 1024, 256)),
        ((0, 15), (0, 768, 256, 1024)),
        ((15, 15), (768, 768, 1024, 1024)),
    ],
)
def test_corner_cells_clamp_both_axes(cell, expected_box):
    bounds = calculate_extraction_bounds(*cell)
    assert bounds.box == expected_box
    assert bounds.offset_x > 0
    assert bounds.offset_y > 0


def test_bounds_stay_on_canvas_with_full_area_for_every_cell():
    for x in range(GRID_SIZE):
        for y in range(GRID_SIZE):
            bounds = calculate_extraction_bounds(x, y)
            assert 0 <= bounds.start_x <= bounds.end_x <= BACKGROUND_SIZE
            assert 0 <= bounds.start_y <= bounds.end_y <= BACKGROUND_SIZE
            assert bounds.width <= EXTRACTION_SIZE
            assert bounds.height <= EXTRACTION_SIZE
            assert bounds.area == EXTRACTION_SIZE ** 2


def test_bounds_are_deterministic():
    assert calculate_extraction_bounds(3, 12) == calculate_extraction_bounds(3, 12)


def test_validate_cell():
    validate_cell(0, 0)
    validate_cell(GRID_SIZE - 1, GRID_SIZE - 1)
    for bad in [(-1, 0), (0, GRID_SIZE), (GRID_SIZE, 3), (1.5, 2), (True, 2)]:
        with pytest.raises(InvalidCellError):
            validate_cell(*bad)


def test_stitching_mask_shape_and_mode():
    mask = decode_png(create_stitching_mask())
    assert mask.shape == (EXTRACTION_SIZE, EXTRACTION_SIZE, 4)


def test_stitching_mask_radial_profile():
    alpha = decode_png(create_stitching_mask())[..., 3]

    assert alpha[CENTER, CENTER] <= 2
    assert alpha[CENTER, CENTER + 20] == 0
    assert 100 < alpha[CENTER, CENTER + 64] < 200
    assert 100 < alpha[CENTER + 64, CENTER] < 200
    assert alpha[CENTER, CENTER + 98] == 255
    assert alpha[0, 0] == 255
    assert alpha[EXTRACTION_SIZE - 1, EXTRACTION_SIZE - 1] == 255

    # Monotonic from the centre outwards.
    row = alpha[CENTER, CENTER:].astype(int)
    assert np.all(np.diff(row) >= 0)


def test_stitching_mask_is_deterministic():
    first = create_stitching_mask()
    _render_stitching_mask.cache_clear()
    second = create_stitching_mask()
    assert first == second


def test_cell_mask_cuts_out_only_the_cell():
    alpha = decode_png(create_cell_mask(3, 5))[..., 3]
    assert alpha.shape == (BACKGROUND_SIZE, BACKGROUND_SIZE)

    top, left = 5 * CELL_SIZE, 3 * CELL_SIZE
    assert np.all(alpha[top:top + CELL_SIZE, left:left + CELL_SIZE] == 0)
    assert alpha[top - 1, left] == 255
    assert alpha[top, left + CELL_SIZE] == 255
    assert int((alpha == 0).sum()) == CELL_SIZE * CELL_SIZE


def test_extract_region_crops_the_bounds(background_png, background_pixels):
    extraction = extract_region(background_png, 7, 7)
    region = decode_png(extraction.extracted_region)

    assert region.shape == (EXTRACTION_SIZE, EXTRACTION_SIZE, 4)
    assert np.all(region[..., 3] == 255)
    assert np.array_equal(region[..., :3], background_pixels[352:608, 352:608])
    assert extraction.bounds == calculate_extraction_bounds(7, 7)


def test_extract_region_at_corner(background_png, background_pixels):
    extraction = extract_region(background_png, 15, 0)
    region = decode_png(extraction.extracted_region)
    assert region.shape[:2] == (EXTRACTION_SIZE, EXTRACTION_SIZE)
    assert np.array_equal(region[..., :3], background_pixels[0:256, 768:1024])


def test_extract_region_rejects_garbage():
    with pytest.raises(StitchingError):
        extract_region(b"definitely not a png", 7, 7)


def test_extract_region_rejects_undersized_background():
    small = solid_png(EXTRACTION_SIZE - 1, (10, 20, 30))
    with pytest.raises(StitchingError):
        extract_region(small, 0, 0)


def test_composite_keeps_outside_pixels_and_replaces_center():
    red = solid_png(BACKGROUND_SIZE, (255, 0, 0))
    blue = solid_png(BACKGROUND_SIZE, (0, 0, 255))

    result = decode_png(composite_result(red, blue, 7, 7, create_stitching_mask()))

    assert result.shape == (BACKGROUND_SIZE, BACKGROUND_SIZE, 3)
    outside = np.ones((BACKGROUND_SIZE, BACKGROUND_SIZE), dtype=bool)
    outside[352:608, 352:608] = False
    assert np.all(result[outside] == (255, 0, 0))

    assert tuple(result[480, 480]) == (0, 0, 255)
    # Window corners sit under the opaque border of the mask.
    assert tuple(result[352, 352]) == (255, 0, 0)
    assert tuple(result[607, 607]) == (255, 0, 0)
    # Halfway out the gradient is a mix of both.
    mixed = result[480, 480 + 64]
    assert 0 < mixed[0] < 255
    assert 0 < mixed[2] < 255


def test_composite_round_trip_reproduces_background(background_png, background_pixels):
    extraction = extract_region(background_png, 4, 11)
    result = decode_png(
        composite_result(background_png, extraction.extracted_region, 4, 11, create_stitching_mask())
    )

    bounds = extraction.bounds
    diff = np.abs(result.astype(int) - background_pixels.astype(int))
    assert diff.max() <= 1

    outside = np.ones(diff.shape[:2], dtype=bool)
    outside[bounds.start_y:bounds.end_y, bounds.start_x:bounds.end_x] = False
    assert np.array_equal(result[outside], background_pixels[outside])


def test_composite_preserves_background_alpha():
    pixels = np.zeros((BACKGROUND_SIZE, BACKGROUND_SIZE, 4), dtype=np.uint8)
    pixels[...] = (0, 255, 0, 255)
    pixels[0, 0] = (1, 2, 3, 0)
    background = encode_png(pixels)
    generated = solid_png(EXTRACTION_SIZE, (0, 0, 255))

    result = decode_png(composite_result(background, generated, 7, 7, create_stitching_mask()))

    assert result.shape == (BACKGROUND_SIZE, BACKGROUND_SIZE, 4)
    assert tuple(result[0, 0]) == (1, 2, 3, 0)
    assert tuple(result[480, 480]) == (0, 0, 255, 255)


def test_composite_rejects_wrong_sized_mask(background_png):
    generated = solid_png(EXTRACTION_SIZE, (0, 0, 255))
    with pytest.raises(ValueError):
        composite_result(background_png, generated, 7, 7, solid_png(128, (255, 255, 255, 255)))


def test_composite_rejects_garbage_generated_region(background_png):
    with pytest.raises(StitchingError):
        composite_result(background_png, b"nope", 7, 7, create_stitching_mask())
