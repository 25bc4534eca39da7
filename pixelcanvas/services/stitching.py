"""
Grid-region extraction and seam-blending compositor.

The shared background is a GRID_SIZE x GRID_SIZE tiling of CELL_SIZE cells.
When a cell changes hands, a window of EXTRACTION_SIZE pixels around it is
cut out, sent to an image model for regeneration, and blended back with a
radial alpha mask so that the new content fades into the untouched
background without a visible seam.

All functions here work on PNG byte buffers in and out, hold no state other
than the memoised mask, and are safe to call concurrently.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from io import BytesIO

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from pixelcanvas.models.canvas import ExtractionBounds, RegionExtraction


logger = logging.getLogger(__name__)

GRID_SIZE = 16  # 16x16 grid
CELL_SIZE = 64  # 64x64 pixels per cell
BACKGROUND_SIZE = GRID_SIZE * CELL_SIZE  # 1024x1024 background
EXTRACTION_BLOCKS = 4  # extraction window spans 4x4 cells
EXTRACTION_SIZE = CELL_SIZE * EXTRACTION_BLOCKS  # 256x256

# Radii of the mask's transparent disc and of the end of its gradient ring.
MASK_INNER_RADIUS = CELL_SIZE / 2
MASK_OUTER_RADIUS = 3 * CELL_SIZE / 2


class StitchingError(RuntimeError):
    """Raised when an image cannot be decoded, cropped or composited."""


class InvalidCellError(ValueError):
    """Raised when grid coordinates fall outside the canvas."""


def validate_cell(cell_x: int, cell_y: int) -> None:
    """
    Reject coordinates outside the grid.

    The stitching functions themselves trust their inputs; this is for the
    HTTP layer and background jobs to call before handing coordinates over.
    """
    for value in (cell_x, cell_y):
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value < GRID_SIZE:
            raise InvalidCellError(
                f"Invalid coordinates. x and y must be integers between 0 and {GRID_SIZE - 1}."
            )


def _clamp_axis(center: int) -> tuple[int, int, int]:
    """Return (start, end, offset) of a centered window along one axis."""
    start = center - EXTRACTION_SIZE // 2
    end = start + EXTRACTION_SIZE
    offset = 0

    if start < 0:
        offset = -start
        start = 0
        end = EXTRACTION_SIZE

    if end > BACKGROUND_SIZE:
        offset = end - BACKGROUND_SIZE
        end = BACKGROUND_SIZE
        start = BACKGROUND_SIZE - EXTRACTION_SIZE

    return max(0, start), min(BACKGROUND_SIZE, end), offset


def calculate_extraction_bounds(cell_x: int, cell_y: int) -> ExtractionBounds:
    """
    Map a grid cell to the extraction window around it.

    The window is centered on the middle of the cell. At the canvas edges it
    is pushed back inside rather than shrunk, so it keeps its full size;
    each axis is clamped independently, which handles corners.
    """
    start_x, end_x, offset_x = _clamp_axis(cell_x * CELL_SIZE + CELL_SIZE // 2)
    start_y, end_y, offset_y = _clamp_axis(cell_y * CELL_SIZE + CELL_SIZE // 2)
    return ExtractionBounds(
        start_x=start_x,
        start_y=start_y,
        end_x=end_x,
        end_y=end_y,
        offset_x=offset_x,
        offset_y=offset_y,
    )


def _decode(data: bytes, label: str) -> Image.Image:
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise StitchingError(f"Failed to decode {label} image: {exc}") from exc
    return image


def _encode_png(pixels: np.ndarray) -> bytes:
    buffer = BytesIO()
    Image.fromarray(np.ascontiguousarray(pixels)).save(buffer, format="PNG")
    return buffer.getvalue()


def _stretch(pixels: np.ndarray, size: int = EXTRACTION_SIZE) -> np.ndarray:
    """Resize to size x size ignoring aspect ratio (a "fill" resize)."""
    height, width = pixels.shape[:2]
    if (width, height) == (size, size):
        return pixels
    interpolation = cv2.INTER_AREA if width > size or height > size else cv2.INTER_LINEAR
    return cv2.resize(np.ascontiguousarray(pixels), (size, size), interpolation=interpolation)


def _ensure_contains(image: Image.Image, bounds: ExtractionBounds) -> None:
    if image.width < bounds.end_x or image.height < bounds.end_y:
        raise StitchingError(
            f"Background is {image.width}x{image.height}, too small for the "
            f"extraction window {bounds.box}"
        )


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA", "PA") or "transparency" in image.info


def _radial_gradient(size: int, inner_stop: float, outer_stop: float) -> np.ndarray:
    """
    Radial gradient shape with opacity 1 up to `inner_stop` and 0 from
    `outer_stop` on, stops given as fractions of the half-width.
    """
    half = size / 2
    coords = np.arange(size, dtype=np.float64) + 0.5
    distance = np.hypot(coords[np.newaxis, :] - half, coords[:, np.newaxis] - half) / half
    return np.clip((outer_stop - distance) / (outer_stop - inner_stop), 0.0, 1.0)


@lru_cache(maxsize=1)
def _render_stitching_mask() -> bytes:
    half = EXTRACTION_SIZE / 2
    shape = _radial_gradient(
        EXTRACTION_SIZE,
        inner_stop=MASK_INNER_RADIUS / half,
        outer_stop=MASK_OUTER_RADIUS / half,
    )

    # Opaque white canvas with the gradient shape subtracted (destination-out).
    canvas_alpha = np.full((EXTRACTION_SIZE, EXTRACTION_SIZE), 255.0)
    alpha = canvas_alpha * (1.0 - shape)

    mask = np.full((EXTRACTION_SIZE, EXTRACTION_SIZE, 4), 255, dtype=np.uint8)
    mask[..., 3] = np.rint(alpha).astype(np.uint8)
    logger.debug("Rendered %dx%d stitching mask", EXTRACTION_SIZE, EXTRACTION_SIZE)
    return _encode_png(mask)


def create_stitching_mask() -> bytes:
    """
    Return the PNG-encoded RGBA stitching mask.

    Alpha is 0 within CELL_SIZE/2 of the centre, ramps linearly up to 255 at
    3*CELL_SIZE/2, and stays 255 out to the border. The mask is the same on
    every call and is rendered once per process.
    """
    return _render_stitching_mask()


def create_cell_mask(cell_x: int, cell_y: int) -> bytes:
    """
    Full-canvas inpainting mask: opaque black everywhere except a fully
    transparent CELL_SIZE square over the target cell.
    """
    mask = np.zeros((BACKGROUND_SIZE, BACKGROUND_SIZE, 4), dtype=np.uint8)
    mask[..., 3] = 255
    left = cell_x * CELL_SIZE
    top = cell_y * CELL_SIZE
    mask[top:top + CELL_SIZE, left:left + CELL_SIZE, 3] = 0
    return _encode_png(mask)


def extract_region(background: bytes, cell_x: int, cell_y: int) -> RegionExtraction:
    """
    Crop the extraction window around a cell out of the background.

    The result is always an EXTRACTION_SIZE square RGBA PNG. A crop of any
    other shape is stretched to fit, which only happens if the window
    constants are changed without the background following suit.
    """
    bounds = calculate_extraction_bounds(cell_x, cell_y)
    image = _decode(background, "background")
    _ensure_contains(image, bounds)

    region = np.asarray(image.convert("RGBA"))[bounds.start_y:bounds.end_y, bounds.start_x:bounds.end_x]
    region = _stretch(region)

    logger.debug("Extracted region %s for cell (%d, %d)", bounds.box, cell_x, cell_y)
    return RegionExtraction(extracted_region=_encode_png(region), bounds=bounds)


def _blend_alpha(stitching_mask: bytes) -> np.ndarray:
    """Invert the mask's alpha: opaque where new content fully replaces old."""
    mask = _decode(stitching_mask, "stitching mask").convert("RGBA")
    if mask.size != (EXTRACTION_SIZE, EXTRACTION_SIZE):
        raise ValueError(
            f"Stitching mask must be {EXTRACTION_SIZE}x{EXTRACTION_SIZE}, got {mask.width}x{mask.height}"
        )
    return 255 - np.asarray(mask)[..., 3]


def _source_over(source: np.ndarray, destination: np.ndarray) -> np.ndarray:
    """
    8-bit source-over of an RGBA source onto an RGB or RGBA destination.

    Integer arithmetic with round-half-up; where the source is fully
    transparent the destination comes back unchanged.
    """
    src_rgb = source[..., :3].astype(np.int64)
    src_a = source[..., 3:4].astype(np.int64)
    dst = destination.astype(np.int64)

    if destination.shape[2] == 3:
        blended = (src_rgb * src_a + dst * (255 - src_a) + 127) // 255
        return blended.astype(np.uint8)

    dst_rgb = dst[..., :3]
    dst_a = dst[..., 3:4]
    # Both scaled by 255 to stay in integers.
    out_a = src_a * 255 + dst_a * (255 - src_a)
    numerator = src_rgb * src_a * 255 + dst_rgb * dst_a * (255 - src_a)
    safe_a = np.where(out_a == 0, 1, out_a)
    out_rgb = np.where(out_a == 0, dst_rgb, (numerator + safe_a // 2) // safe_a)

    blended = np.concatenate([out_rgb, (out_a + 127) // 255], axis=2).astype(np.uint8)
    untouched = source[..., 3] == 0
    blended[untouched] = destination[untouched]
    return blended


def composite_result(
    original_background: bytes,
    generated_region: bytes,
    cell_x: int,
    cell_y: int,
    stitching_mask: bytes,
) -> bytes:
    """
    Blend a regenerated extraction window back into the background.

    `generated_region` may be any size (image models typically answer at
    1024x1024); it is stretched to the window size, given the inverted
    stitching mask as its alpha channel and laid over the background at the
    window position. Pixels outside the window are left byte-for-byte as
    they were.
    """
    bounds = calculate_extraction_bounds(cell_x, cell_y)
    base = _decode(original_background, "background")
    _ensure_contains(base, bounds)

    generated = _decode(generated_region, "generated region").convert("RGBA")
    source = np.array(_stretch(np.asarray(generated)))
    source[..., 3] = _blend_alpha(stitching_mask)

    mode = "RGBA" if _has_alpha(base) else "RGB"
    canvas = np.array(base.convert(mode))
    window = canvas[bounds.start_y:bounds.end_y, bounds.start_x:bounds.end_x]
    canvas[bounds.start_y:bounds.end_y, bounds.start_x:bounds.end_x] = _source_over(source, window)

    logger.info(
        "Composited generated region into %dx%d background at %s (cell %d, %d)",
        base.width,
        base.height,
        bounds.box,
        cell_x,
        cell_y,
    )
    return _encode_png(canvas)
