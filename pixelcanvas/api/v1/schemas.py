from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt

from pixelcanvas.models.canvas import UpdateStatus


class CamelModel(BaseModel):
    """Base for payloads shared with the JavaScript frontend (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class GridInfo(BaseModel):
    """Canvas geometry constants callers must agree on."""

    grid_size: int = Field(..., description="Cells per canvas side.")
    cell_size: int = Field(..., description="Pixels per cell side.")
    background_size: int = Field(..., description="Pixels per background side.")
    extraction_blocks: int = Field(..., description="Cells per extraction window side.")
    extraction_size: int = Field(..., description="Pixels per extraction window side.")


class ExtractionBoundsSchema(CamelModel):
    """Extraction window in background pixel space."""

    start_x: NonNegativeInt = Field(..., alias="startX")
    start_y: NonNegativeInt = Field(..., alias="startY")
    end_x: NonNegativeInt = Field(..., alias="endX")
    end_y: NonNegativeInt = Field(..., alias="endY")
    offset_x: NonNegativeInt = Field(
        ...,
        alias="offsetX",
        description="How far the window was pushed inward from the canvas edge.",
    )
    offset_y: NonNegativeInt = Field(..., alias="offsetY")


class RateLimitStats(BaseModel):
    """Snapshot of the Replicate rate limiter."""

    tokens_available: float
    max_tokens: float
    requests_last_minute: int
    max_requests_per_minute: int
    is_rate_limited: bool
    consecutive_429s: int
    backoff_multiplier: float


class CellCoordinates(BaseModel):
    x: int
    y: int


class BoundsResponse(CamelModel):
    coordinates: CellCoordinates
    bounds: ExtractionBoundsSchema
    grid_size: int = Field(..., alias="gridSize")


class MaskResponse(CamelModel):
    """Stitching mask as a data URL."""

    success: bool = True
    mask_url: str = Field(..., alias="maskUrl", description="data:image/png;base64 URL of the mask.")


class ExtractRegionResponse(CamelModel):
    """Extracted window as a data URL together with its bounds."""

    success: bool = True
    bounds: ExtractionBoundsSchema
    image_url: str = Field(..., alias="imageUrl", description="data:image/png;base64 URL of the window.")


class BackgroundUploadResponse(BaseModel):
    digest: str = Field(..., description="SHA-256 of the stored background.")
    current: bool = Field(..., description="Whether the background is now the live canvas.")


class BackgroundUpdateCreate(CamelModel):
    """Event asking for a purchased cell to be painted into the background."""

    event_type: Literal["PixelMinted", "PixelImageUpdated"] = Field(..., alias="eventType")
    transaction_id: str = Field(..., min_length=1, alias="transactionId")
    pixel_id: str = Field(..., min_length=1, alias="pixelId")
    x: int
    y: int
    ai_prompt: str = Field(default="", alias="aiPrompt")
    ipfs_image_cid: str | None = Field(default=None, alias="ipfsImageCID")
    triggering_ai_image_id: int | None = Field(default=None, alias="triggeringAiImageID")


class BackgroundUpdateResponse(CamelModel):
    status: UpdateStatus
    transaction_id: str = Field(..., alias="transactionId")
    message: str = ""
    old_background: str | None = Field(default=None, alias="oldBackground")
    new_background: str | None = Field(default=None, alias="newBackground")


class ProcessedEventDetail(CamelModel):
    transaction_id: str = Field(..., alias="transactionId")
    event_type: str = Field(..., alias="eventType")
    pixel_id: str = Field(..., alias="pixelId")
    status: UpdateStatus
    error_message: str | None = Field(default=None, alias="errorMessage")
    old_background: str | None = Field(default=None, alias="oldBackground")
    new_background: str | None = Field(default=None, alias="newBackground")
    processed_at: str = Field(..., alias="processedAt", description="ISO 8601 timestamp (UTC).")


class ProcessedEventList(BaseModel):
    events: List[ProcessedEventDetail] = Field(default_factory=list)
