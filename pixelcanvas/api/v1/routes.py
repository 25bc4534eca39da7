import base64
import json

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile, status
from starlette.concurrency import run_in_threadpool

from pixelcanvas.api.v1.schemas import (
    BackgroundUpdateCreate,
    BackgroundUpdateResponse,
    BackgroundUploadResponse,
    BoundsResponse,
    CellCoordinates,
    ExtractionBoundsSchema,
    ExtractRegionResponse,
    GridInfo,
    MaskResponse,
    ProcessedEventDetail,
    ProcessedEventList,
    RateLimitStats,
)
from pixelcanvas.models.canvas import BackgroundUpdateRequest, ExtractionBounds, ProcessedEvent, UpdateStatus
from pixelcanvas.services import stitching
from pixelcanvas.services.backgrounds import (
    BackgroundStorageError,
    BackgroundStore,
    InvalidCidError,
    get_background_store,
)
from pixelcanvas.services.rate_limiter import ReplicateRateLimiter, get_rate_limiter
from pixelcanvas.services.updates import BackgroundUpdateService, get_update_service

router = APIRouter(prefix="/api/v1")

# Masks and windows of a given background never change.
IMMUTABLE_CACHE = "s-maxage=31536000, stale-while-revalidate"


def _require_cell(x: int, y: int) -> None:
    try:
        stitching.validate_cell(x, y)
    except stitching.InvalidCellError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _data_url(png: bytes) -> str:
    return f"data:image/png;base64,{base64.b64encode(png).decode('ascii')}"


def _bounds_schema(bounds: ExtractionBounds) -> ExtractionBoundsSchema:
    return ExtractionBoundsSchema(**bounds.to_dict())


def _png_response(png: bytes, headers: dict | None = None) -> Response:
    return Response(content=png, media_type="image/png", headers=headers or {})


def _event_detail(event: ProcessedEvent) -> ProcessedEventDetail:
    return ProcessedEventDetail(
        transaction_id=event.transaction_id,
        event_type=event.event_type,
        pixel_id=event.pixel_id,
        status=event.status,
        error_message=event.error_message,
        old_background=event.old_background,
        new_background=event.new_background,
        processed_at=event.processed_at.isoformat(),
    )


async def _read_upload(upload: UploadFile, label: str) -> bytes:
    data = await upload.read()
    if not data:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Uploaded {label} image is empty.",
        )
    return data


@router.get("/health", tags=["health"])
async def health_check() -> dict:
    """API v1 health check endpoint."""
    return {"status": "ok", "api_version": "v1"}


@router.get("/rate-limit", response_model=RateLimitStats, tags=["health"], summary="Replicate rate limiter state")
async def get_rate_limit_stats(
    limiter: ReplicateRateLimiter = Depends(get_rate_limiter),
) -> RateLimitStats:
    return RateLimitStats(**limiter.get_stats())


@router.get("/grid", response_model=GridInfo, tags=["canvas"], summary="Canvas geometry")
async def get_grid() -> GridInfo:
    return GridInfo(
        grid_size=stitching.GRID_SIZE,
        cell_size=stitching.CELL_SIZE,
        background_size=stitching.BACKGROUND_SIZE,
        extraction_blocks=stitching.EXTRACTION_BLOCKS,
        extraction_size=stitching.EXTRACTION_SIZE,
    )


@router.get(
    "/bounds/{x}/{y}",
    response_model=BoundsResponse,
    tags=["stitching"],
    summary="Extraction window for a cell",
)
async def get_bounds(x: int, y: int) -> BoundsResponse:
    _require_cell(x, y)
    bounds = stitching.calculate_extraction_bounds(x, y)
    return BoundsResponse(
        coordinates=CellCoordinates(x=x, y=y),
        bounds=_bounds_schema(bounds),
        grid_size=stitching.GRID_SIZE,
    )


@router.get("/mask-stitch", tags=["stitching"], summary="Stitching mask PNG")
async def get_stitching_mask() -> Response:
    """
    Return the radial stitching mask as a PNG.

    The mask is identical for every cell, so it is served with a long
    shared-cache lifetime.
    """
    mask = await run_in_threadpool(stitching.create_stitching_mask)
    return _png_response(mask, {"Cache-Control": IMMUTABLE_CACHE})


@router.post(
    "/mask-stitch",
    response_model=MaskResponse,
    tags=["stitching"],
    summary="Stitching mask as a data URL",
)
async def post_stitching_mask() -> MaskResponse:
    mask = await run_in_threadpool(stitching.create_stitching_mask)
    return MaskResponse(success=True, mask_url=_data_url(mask))


@router.get("/mask/{x}/{y}", tags=["stitching"], summary="Full-canvas inpainting mask for a cell")
async def get_cell_mask(x: int, y: int) -> Response:
    _require_cell(x, y)
    mask = await run_in_threadpool(stitching.create_cell_mask, x, y)
    return _png_response(mask, {"Cache-Control": IMMUTABLE_CACHE})


@router.post(
    "/extract-region",
    response_model=ExtractRegionResponse,
    tags=["stitching"],
    summary="Extract the window around a cell from an uploaded background",
)
async def post_extract_region(
    background: UploadFile = File(..., description="Full background image (PNG)."),
    x: int = Form(..., description="Cell column."),
    y: int = Form(..., description="Cell row."),
) -> ExtractRegionResponse:
    _require_cell(x, y)
    data = await _read_upload(background, "background")
    try:
        extraction = await run_in_threadpool(stitching.extract_region, data, x, y)
    except stitching.StitchingError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return ExtractRegionResponse(
        success=True,
        bounds=_bounds_schema(extraction.bounds),
        image_url=_data_url(extraction.extracted_region),
    )


@router.get(
    "/extract-region/{x}/{y}/{cid}",
    tags=["stitching"],
    summary="Extract the window around a cell from a background on IPFS",
)
async def get_extract_region(
    x: int,
    y: int,
    cid: str,
    store: BackgroundStore = Depends(get_background_store),
) -> Response:
    _require_cell(x, y)
    try:
        data = await run_in_threadpool(store.fetch_remote, cid)
    except InvalidCidError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except BackgroundStorageError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    try:
        extraction = await run_in_threadpool(stitching.extract_region, data, x, y)
    except stitching.StitchingError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return _png_response(
        extraction.extracted_region,
        {
            "Cache-Control": IMMUTABLE_CACHE,
            "X-Extraction-Bounds": json.dumps(extraction.bounds.to_dict()),
        },
    )


@router.post("/composite", tags=["stitching"], summary="Blend a generated window into a background")
async def post_composite(
    background: UploadFile = File(..., description="Full background image."),
    generated: UploadFile = File(..., description="Regenerated extraction window (any size)."),
    mask: UploadFile | None = File(default=None, description="Stitching mask; defaults to the standard one."),
    x: int = Form(...),
    y: int = Form(...),
) -> Response:
    """
    Composite a regenerated window back onto the background and return the
    new background as PNG.
    """
    _require_cell(x, y)
    background_data = await _read_upload(background, "background")
    generated_data = await _read_upload(generated, "generated")
    if mask is not None:
        mask_data = await _read_upload(mask, "mask")
    else:
        mask_data = await run_in_threadpool(stitching.create_stitching_mask)

    try:
        result = await run_in_threadpool(
            stitching.composite_result, background_data, generated_data, x, y, mask_data
        )
    except (stitching.StitchingError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return _png_response(result)


@router.post(
    "/backgrounds",
    response_model=BackgroundUploadResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["backgrounds"],
    summary="Store a background image",
)
async def upload_background(
    background: UploadFile = File(...),
    make_current: bool = Form(default=True),
    store: BackgroundStore = Depends(get_background_store),
) -> BackgroundUploadResponse:
    data = await _read_upload(background, "background")
    try:
        digest = await run_in_threadpool(store.put, data)
        if make_current:
            await run_in_threadpool(store.set_current, digest)
    except BackgroundStorageError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to persist background.",
        ) from exc
    return BackgroundUploadResponse(digest=digest, current=make_current)


@router.get("/backgrounds/current", tags=["backgrounds"], summary="Live background PNG")
async def get_current_background(store: BackgroundStore = Depends(get_background_store)) -> Response:
    digest = store.current()
    if digest is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No current background.")
    try:
        data = await run_in_threadpool(store.get, digest)
    except BackgroundStorageError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return _png_response(data, {"ETag": f'"{digest}"'})


@router.post(
    "/background-updates",
    response_model=BackgroundUpdateResponse,
    tags=["backgrounds"],
    summary="Paint a purchased cell into the background",
)
async def create_background_update(
    payload: BackgroundUpdateCreate,
    service: BackgroundUpdateService = Depends(get_update_service),
) -> BackgroundUpdateResponse:
    """
    Apply a cell purchase or image change to the shared background.

    Idempotent per `transactionId`: repeated deliveries of a processed event
    answer `already_processed`, concurrent ones `already_processing`.
    """
    _require_cell(payload.x, payload.y)
    request = BackgroundUpdateRequest(
        event_type=payload.event_type,
        transaction_id=payload.transaction_id,
        pixel_id=payload.pixel_id,
        x=payload.x,
        y=payload.y,
        ai_prompt=payload.ai_prompt,
        ipfs_image_cid=payload.ipfs_image_cid,
        triggering_ai_image_id=payload.triggering_ai_image_id,
    )
    outcome = await run_in_threadpool(service.process, request)
    if outcome.status == UpdateStatus.FAILED:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=outcome.message)

    return BackgroundUpdateResponse(
        status=outcome.status,
        transaction_id=outcome.transaction_id,
        message=outcome.message,
        old_background=outcome.old_background,
        new_background=outcome.new_background,
    )


@router.get(
    "/background-updates",
    response_model=ProcessedEventList,
    tags=["backgrounds"],
    summary="List processed update events (development use)",
)
async def list_background_updates(
    service: BackgroundUpdateService = Depends(get_update_service),
) -> ProcessedEventList:
    return ProcessedEventList(events=[_event_detail(event) for event in service.list_events()])


@router.get(
    "/background-updates/{transaction_id}",
    response_model=ProcessedEventDetail,
    tags=["backgrounds"],
    summary="Status of a processed update event",
)
async def get_background_update(
    transaction_id: str,
    service: BackgroundUpdateService = Depends(get_update_service),
) -> ProcessedEventDetail:
    event = service.get_event(transaction_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found.")
    return _event_detail(event)
