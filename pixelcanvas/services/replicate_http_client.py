"""
Direct HTTP client for Replicate's prediction API.

Used to regenerate the extraction window around a purchased cell: the
cropped background and an inpainting mask go up, the painted window comes
back as PNG bytes ready for the compositor.

All calls go through the shared rate limiter (see rate_limiter.py). Only
transient server errors (5xx) are retried here; 429s are handed to the
limiter's backoff instead.
"""

import base64
import logging
import os
import time
from io import BytesIO
from typing import Optional

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

from pixelcanvas.services.rate_limiter import ReplicateRateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "black-forest-labs/flux-fill-pro"

MAX_RETRIES = 2
RETRY_DELAY = 2  # seconds
RETRY_BACKOFF = 2  # exponential backoff multiplier

TERMINAL_FAILURES = ("failed", "canceled")


class ReplicateHTTPClient:
    """
    Minimal Replicate client built on `requests`.

    The token comes from the constructor or REPLICATE_API_TOKEN. Without a
    token the client reports itself unavailable and every call returns None,
    so callers can decide how to degrade.
    """

    def __init__(
        self,
        api_token: Optional[str] = None,
        model: Optional[str] = None,
        rate_limiter: Optional[ReplicateRateLimiter] = None,
        base_url: str = "https://api.replicate.com/v1",
        poll_interval: float = 2.0,
        max_wait: float = 120.0,
    ):
        self.api_token = api_token or os.environ.get("REPLICATE_API_TOKEN")
        self.model = model or os.environ.get("REPLICATE_MODEL", DEFAULT_MODEL)
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self._rate_limiter = rate_limiter

        if not self.api_token:
            logger.warning("REPLICATE_API_TOKEN not set. Background regeneration is disabled.")
            self.available = False
            return

        if not self.api_token.startswith("r8_"):
            logger.warning("Replicate token does not start with 'r8_' and may be invalid")

        self.available = True
        logger.info("Replicate HTTP client initialized (model: %s)", self.model)

    @property
    def rate_limiter(self) -> ReplicateRateLimiter:
        if self._rate_limiter is None:
            self._rate_limiter = get_rate_limiter()
        return self._rate_limiter

    def is_available(self) -> bool:
        """Check if the client is configured with a token."""
        return self.available and self.api_token is not None

    def inpaint_region(
        self,
        image: bytes,
        mask: bytes,
        prompt: str,
        acquire_timeout: float = 30.0,
    ) -> Optional[bytes]:
        """
        Repaint the masked part of an image.

        Args:
            image: PNG bytes of the extraction window.
            mask: PNG bytes where transparent pixels mark the area to paint.
            prompt: Text prompt for the model.
            acquire_timeout: Seconds to wait for the rate limiter.

        Returns:
            PNG bytes of the model output, or None if the call did not succeed.
        """
        if not self.is_available():
            logger.warning("Replicate not available. Region regeneration skipped.")
            return None

        if not self.rate_limiter.acquire(timeout=acquire_timeout):
            logger.error("Failed to acquire rate limit token within %.0fs", acquire_timeout)
            return None

        for attempt in range(MAX_RETRIES + 1):
            try:
                result = self._attempt_inpainting(image, mask, prompt, attempt)
            except requests.exceptions.HTTPError as exc:
                status_code = exc.response.status_code if exc.response is not None else 0

                if status_code == 429:
                    self.rate_limiter.report_429()
                    logger.error("Replicate rate limited (429); backoff applied")
                    return None

                if 400 <= status_code < 500:
                    logger.error("Replicate client error (%d): %s", status_code, self._error_detail(exc))
                    return None

                if attempt < MAX_RETRIES:
                    delay = RETRY_DELAY * (RETRY_BACKOFF ** attempt)
                    logger.warning(
                        "Replicate server error (%s), retrying in %ds (attempt %d/%d)",
                        self._error_detail(exc),
                        delay,
                        attempt + 1,
                        MAX_RETRIES,
                    )
                    time.sleep(delay)
                    continue

                logger.error(
                    "Replicate failed after %d attempts: %s", MAX_RETRIES + 1, self._error_detail(exc)
                )
                return None
            except requests.exceptions.RequestException as exc:
                logger.error("Replicate request error: %s", exc)
                return None

            self.rate_limiter.report_success()
            return result

        return None

    def _attempt_inpainting(self, image: bytes, mask: bytes, prompt: str, attempt: int) -> Optional[bytes]:
        """Single prediction round trip (create, poll, download)."""
        suffix = f" (attempt {attempt + 1})" if attempt > 0 else ""
        logger.info("Calling Replicate model %s%s", self.model, suffix)

        response = requests.post(
            self._prediction_endpoint(),
            headers=self._headers(),
            json=self._build_payload(image, mask, prompt),
            timeout=30,
        )
        response.raise_for_status()
        prediction = response.json()
        urls = prediction.get("urls") if isinstance(prediction, dict) else None
        poll_url = urls.get("get") if isinstance(urls, dict) else None
        if not poll_url:
            logger.error("Replicate prediction response has no polling URL: %s", str(prediction)[:200])
            return None

        output_url = self._wait_for_prediction(poll_url)
        if output_url is None:
            logger.error("Replicate returned no output")
            return None

        return self._download_image(output_url)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    def _prediction_endpoint(self) -> str:
        """
        Versioned models ("owner/name:hash") go to the generic predictions
        endpoint; official models ("owner/name") have their own.
        """
        if ":" in self.model:
            return f"{self.base_url}/predictions"
        return f"{self.base_url}/models/{self.model}/predictions"

    def _build_payload(self, image: bytes, mask: bytes, prompt: str) -> dict:
        payload = {
            "input": {
                "image": self._to_data_uri(image),
                "mask": self._to_data_uri(self._paint_mask(mask)),
                "prompt": prompt,
                "output_format": "png",
            }
        }
        if ":" in self.model:
            payload["version"] = self.model.split(":", 1)[1]
        return payload

    @staticmethod
    def _paint_mask(mask: bytes) -> bytes:
        """
        Convert a transparency mask (transparent = paint here) into the
        black/white convention Replicate inpainting models expect
        (white = paint here).
        """
        alpha = np.asarray(Image.open(BytesIO(mask)).convert("RGBA"))[..., 3]
        binary = np.where(alpha < 128, 255, 0).astype(np.uint8)
        buffer = BytesIO()
        Image.fromarray(binary).save(buffer, format="PNG")
        return buffer.getvalue()

    @staticmethod
    def _to_data_uri(png: bytes) -> str:
        return f"data:image/png;base64,{base64.b64encode(png).decode('utf-8')}"

    @staticmethod
    def _error_detail(exc: requests.exceptions.HTTPError) -> str:
        if exc.response is None:
            return str(exc)
        try:
            body = exc.response.json()
        except ValueError:
            return f"{exc.response.status_code}: {exc.response.text[:200]}"
        detail = body.get("detail", body) if isinstance(body, dict) else body
        return f"{exc.response.status_code}: {detail}"

    def _wait_for_prediction(self, prediction_url: str) -> Optional[str]:
        """Poll a prediction until it finishes; return its first output URL."""
        deadline = time.monotonic() + self.max_wait

        while time.monotonic() < deadline:
            response = requests.get(prediction_url, headers=self._headers(), timeout=10)
            response.raise_for_status()
            prediction = response.json()
            status = prediction.get("status")

            if status == "succeeded":
                output = prediction.get("output")
                if isinstance(output, str):
                    return output
                if isinstance(output, list) and output:
                    return output[0]
                return None

            if status in TERMINAL_FAILURES:
                logger.error("Prediction %s: %s", status, prediction.get("error", "unknown error"))
                return None

            if status not in ("starting", "processing"):
                logger.warning("Unknown prediction status: %s", status)
                return None

            time.sleep(self.poll_interval)

        logger.error("Prediction timed out after %.0fs", self.max_wait)
        return None

    def _download_image(self, url: str) -> Optional[bytes]:
        """Download the model output and normalise it to PNG bytes."""
        response = requests.get(url, timeout=30)
        response.raise_for_status()
        try:
            image = Image.open(BytesIO(response.content))
            image.load()
        except (UnidentifiedImageError, OSError) as exc:
            logger.error("Replicate output at %s is not an image: %s", url, exc)
            return None

        buffer = BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()
