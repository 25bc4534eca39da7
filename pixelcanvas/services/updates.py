"""
Background update pipeline.

When a cell is minted or its artwork changes, the subject of the cell's AI
prompt is painted into the shared background:

    current background -> extract window -> image model -> composite -> store

Each triggering event is applied at most once. Concurrent deliveries of the
same event are serialised by a lease lock with explicit expiry, so a worker
that dies mid-update cannot block the event forever.
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

from pixelcanvas.models.canvas import (
    BackgroundUpdateRequest,
    ProcessedEvent,
    UpdateOutcome,
    UpdateStatus,
)
from pixelcanvas.services.backgrounds import BackgroundStorageError, BackgroundStore, get_background_store
from pixelcanvas.services.prompts import generate_background_insertion_prompt
from pixelcanvas.services.replicate_http_client import ReplicateHTTPClient
from pixelcanvas.services.stitching import (
    StitchingError,
    composite_result,
    create_cell_mask,
    create_stitching_mask,
    extract_region,
    validate_cell,
)


logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 600.0


class GenerationError(RuntimeError):
    """Raised when the image model produced no usable region."""


class RegionGenerator(Protocol):
    def inpaint_region(self, image: bytes, mask: bytes, prompt: str) -> Optional[bytes]:
        ...


@dataclass(slots=True)
class Lease:
    holder_id: str
    expires_at: float


class LeaseLock:
    """
    Named locks that expire on their own.

    `acquire` hands out a holder id, or None while an unexpired lease on the
    same key exists. Only the holder can release a lease early.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._leases: Dict[str, Lease] = {}
        self._mutex = threading.Lock()

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, lease in self._leases.items() if lease.expires_at <= now]:
            logger.warning("Lease %s expired without release", key)
            del self._leases[key]

    def acquire(self, key: str, duration: float = DEFAULT_LEASE_SECONDS) -> str | None:
        with self._mutex:
            self._purge_expired()
            if key in self._leases:
                return None
            holder_id = str(uuid.uuid4())
            self._leases[key] = Lease(holder_id=holder_id, expires_at=self._clock() + duration)
            return holder_id

    def release(self, key: str, holder_id: str) -> bool:
        with self._mutex:
            lease = self._leases.get(key)
            if lease is None or lease.holder_id != holder_id:
                return False
            del self._leases[key]
            return True

    def is_held(self, key: str) -> bool:
        with self._mutex:
            self._purge_expired()
            return key in self._leases


class BackgroundUpdateService:
    """Applies background update events against a background store."""

    def __init__(
        self,
        store: BackgroundStore,
        generator: RegionGenerator,
        locks: LeaseLock | None = None,
        lease_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._generator = generator
        self._locks = locks or LeaseLock()
        self._lease_seconds = (
            lease_seconds
            if lease_seconds is not None
            else float(os.getenv("PIXELCANVAS_LOCK_LEASE_SECONDS", DEFAULT_LEASE_SECONDS))
        )
        self._events: Dict[str, ProcessedEvent] = {}
        self._events_lock = threading.Lock()

    def get_event(self, transaction_id: str) -> ProcessedEvent | None:
        with self._events_lock:
            return self._events.get(transaction_id)

    def list_events(self) -> List[ProcessedEvent]:
        with self._events_lock:
            return list(self._events.values())

    def _is_processed(self, transaction_id: str) -> bool:
        event = self.get_event(transaction_id)
        return event is not None and event.status == UpdateStatus.SUCCESS

    def _record(self, event: ProcessedEvent) -> None:
        with self._events_lock:
            self._events[event.transaction_id] = event

    def process(self, request: BackgroundUpdateRequest) -> UpdateOutcome:
        """
        Paint one event's subject into the live background.

        Failed events are recorded and may be delivered again; successful
        ones are answered with ALREADY_PROCESSED from then on.
        """
        if self._is_processed(request.transaction_id):
            return UpdateOutcome(
                status=UpdateStatus.ALREADY_PROCESSED,
                transaction_id=request.transaction_id,
                message="Event has already been processed",
            )

        lock_key = f"bg_update_{request.transaction_id}"
        holder_id = self._locks.acquire(lock_key, self._lease_seconds)
        if holder_id is None:
            return UpdateOutcome(
                status=UpdateStatus.ALREADY_PROCESSING,
                transaction_id=request.transaction_id,
                message="Another worker is handling this event",
            )

        old_background: str | None = None
        try:
            # A delivery that finished between the first check and the lease.
            if self._is_processed(request.transaction_id):
                return UpdateOutcome(
                    status=UpdateStatus.ALREADY_PROCESSED,
                    transaction_id=request.transaction_id,
                    message="Event has already been processed",
                )

            logger.info(
                "Processing background update for pixel %s at (%d, %d)",
                request.pixel_id,
                request.x,
                request.y,
            )
            try:
                old_background = self._store.current()
                new_background = self._apply(request, old_background)
            except (StitchingError, BackgroundStorageError, GenerationError, ValueError) as exc:
                logger.error("Background update %s failed: %s", request.transaction_id, exc)
                self._record(
                    ProcessedEvent(
                        transaction_id=request.transaction_id,
                        event_type=request.event_type,
                        pixel_id=request.pixel_id,
                        status=UpdateStatus.FAILED,
                        error_message=str(exc),
                        old_background=old_background,
                    )
                )
                return UpdateOutcome(
                    status=UpdateStatus.FAILED,
                    transaction_id=request.transaction_id,
                    message=str(exc),
                    old_background=old_background,
                )

            # Recorded while the lease is still held.
            self._record(
                ProcessedEvent(
                    transaction_id=request.transaction_id,
                    event_type=request.event_type,
                    pixel_id=request.pixel_id,
                    status=UpdateStatus.SUCCESS,
                    old_background=old_background,
                    new_background=new_background,
                )
            )
            return UpdateOutcome(
                status=UpdateStatus.SUCCESS,
                transaction_id=request.transaction_id,
                old_background=old_background,
                new_background=new_background,
            )
        finally:
            self._locks.release(lock_key, holder_id)

    def _apply(self, request: BackgroundUpdateRequest, current: str | None) -> str:
        validate_cell(request.x, request.y)
        if not request.ai_prompt.strip():
            raise ValueError("An AI prompt is required to update the background")
        if current is None:
            raise BackgroundStorageError("No current background found")

        background = self._store.get(current)
        extraction = extract_region(background, request.x, request.y)
        # The full-canvas cell mask cropped the same way lines the hole up
        # with the cell inside the window, edges included.
        window_mask = extract_region(create_cell_mask(request.x, request.y), request.x, request.y)
        prompt = generate_background_insertion_prompt(request.ai_prompt, request.x, request.y)

        generated = self._generator.inpaint_region(extraction.extracted_region, window_mask.extracted_region, prompt)
        if generated is None:
            raise GenerationError("Image generation returned no result")

        updated = composite_result(background, generated, request.x, request.y, create_stitching_mask())
        digest = self._store.put(updated)
        self._store.set_current(digest)
        return digest


_default_service: BackgroundUpdateService | None = None
_default_service_lock = threading.Lock()


def get_update_service() -> BackgroundUpdateService:
    """Return the process-wide update service wired to Replicate."""
    global _default_service
    if _default_service is None:
        with _default_service_lock:
            if _default_service is None:
                _default_service = BackgroundUpdateService(
                    store=get_background_store(),
                    generator=ReplicateHTTPClient(),
                )
    return _default_service
