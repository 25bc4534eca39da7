from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict


def utcnow() -> datetime:
    """Return an explicit, timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ExtractionBounds:
    """
    Rectangle in background pixel space surrounding a target grid cell.

    The rectangle is always EXTRACTION_SIZE square for a full-size
    background; near an edge the window is pushed inward instead of being
    shrunk, and the offsets record how far it had to move.
    """

    start_x: int
    start_y: int
    end_x: int
    end_y: int
    # How far the ideal centered window was shifted to stay on the canvas.
    offset_x: int = 0
    offset_y: int = 0

    @property
    def width(self) -> int:
        return self.end_x - self.start_x

    @property
    def height(self) -> int:
        return self.end_y - self.start_y

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def box(self) -> tuple[int, int, int, int]:
        """(left, upper, right, lower) in the order Pillow expects."""
        return (self.start_x, self.start_y, self.end_x, self.end_y)

    def to_dict(self) -> Dict[str, int]:
        """Wire representation shared with the frontend."""
        return {
            "startX": self.start_x,
            "startY": self.start_y,
            "endX": self.end_x,
            "endY": self.end_y,
            "offsetX": self.offset_x,
            "offsetY": self.offset_y,
        }


@dataclass(frozen=True, slots=True)
class RegionExtraction:
    """PNG-encoded extraction window together with the bounds it came from."""

    extracted_region: bytes
    bounds: ExtractionBounds


class UpdateStatus(str, Enum):
    """Outcome of a background update request."""

    SUCCESS = "success"
    FAILED = "failed"
    ALREADY_PROCESSED = "already_processed"
    ALREADY_PROCESSING = "already_processing"


@dataclass(slots=True)
class BackgroundUpdateRequest:
    """
    A cell purchase (or image change) that should be painted into the
    shared background.

    `transaction_id` identifies the triggering event and is the
    idempotency key: an event is only ever applied once.
    """

    event_type: str
    transaction_id: str
    pixel_id: str
    x: int
    y: int
    ai_prompt: str = ""
    ipfs_image_cid: str | None = None
    triggering_ai_image_id: int | None = None


@dataclass(slots=True)
class ProcessedEvent:
    """Record of a background update that has been attempted."""

    transaction_id: str
    event_type: str
    pixel_id: str
    status: UpdateStatus
    error_message: str | None = None
    # Digests of the background before and after the update (on success).
    old_background: str | None = None
    new_background: str | None = None
    processed_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class UpdateOutcome:
    """Result handed back to the caller of the update pipeline."""

    status: UpdateStatus
    transaction_id: str
    message: str = ""
    old_background: str | None = None
    new_background: str | None = None
