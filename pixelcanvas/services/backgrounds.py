from __future__ import annotations

import hashlib
import logging
import os
import re
import threading
from pathlib import Path

import requests


logger = logging.getLogger(__name__)

DEFAULT_GATEWAY = "https://{cid}.ipfs.w3s.link/"

# CIDv0 (base58btc, "Qm...") or CIDv1 in its default base32 multibase ("b...").
CID_PATTERN = re.compile(r"Qm[1-9A-HJ-NP-Za-km-z]{44}|b[a-z2-7]{58,}")


class BackgroundStorageError(RuntimeError):
    """Raised when a background cannot be read, written or fetched."""


class InvalidCidError(ValueError):
    """Raised when a content identifier is not a well-formed IPFS CID."""


class BackgroundStore:
    """
    Content-addressed, filesystem-backed store for canvas backgrounds.

    Each background is written once under `<base_dir>/backgrounds/<sha256>.png`
    and referred to by its digest afterwards. A small pointer file tracks
    which background is currently live on the canvas.
    """

    def __init__(self, base_dir: Path, gateway: str | None = None) -> None:
        self._base_dir = base_dir
        self._blob_dir = base_dir / "backgrounds"
        self._current_file = base_dir / "CURRENT"
        self._gateway = gateway or os.getenv("PIXELCANVAS_IPFS_GATEWAY", DEFAULT_GATEWAY)
        self._lock = threading.Lock()
        self._blob_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _path_for(self, digest: str) -> Path:
        if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
            raise BackgroundStorageError(f"Invalid background digest {digest!r}")
        return self._blob_dir / f"{digest}.png"

    def put(self, data: bytes) -> str:
        """Persist a background and return its digest. Idempotent."""
        digest = hashlib.sha256(data).hexdigest()
        path = self._path_for(digest)
        if path.exists():
            return digest

        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
        except OSError as exc:
            raise BackgroundStorageError("Failed to persist background to disk.") from exc

        logger.info("Stored background %s (%d bytes)", digest[:12], len(data))
        return digest

    def get(self, digest: str) -> bytes:
        path = self._path_for(digest)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise BackgroundStorageError(f"Background {digest} not found") from exc
        except OSError as exc:
            raise BackgroundStorageError(f"Failed to read background {digest}") from exc

    def exists(self, digest: str) -> bool:
        return self._path_for(digest).exists()

    def current(self) -> str | None:
        """Digest of the live background, if one has been set."""
        with self._lock:
            if not self._current_file.exists():
                return None
            return self._current_file.read_text(encoding="utf-8").strip() or None

    def set_current(self, digest: str) -> None:
        if not self.exists(digest):
            raise BackgroundStorageError(f"Cannot make unknown background {digest} current")
        with self._lock:
            try:
                self._current_file.write_text(digest, encoding="utf-8")
            except OSError as exc:
                raise BackgroundStorageError("Failed to update current background pointer.") from exc
        logger.info("Current background is now %s", digest[:12])

    def fetch_remote(self, cid: str, timeout: float = 30.0) -> bytes:
        """Download a background by IPFS CID through the configured gateway."""
        if not CID_PATTERN.fullmatch(cid):
            raise InvalidCidError(f"Invalid IPFS CID {cid!r}")
        url = self._gateway.format(cid=cid)
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise BackgroundStorageError(f"Failed to fetch background image from {url}: {exc}") from exc
        return response.content


_default_store: BackgroundStore | None = None
_default_store_lock = threading.Lock()


def get_background_store() -> BackgroundStore:
    """
    Return the process-wide background store.

    Routes depend on this through FastAPI's dependency injection, so tests
    override it with a store rooted in a temporary directory.
    """
    global _default_store
    if _default_store is None:
        with _default_store_lock:
            if _default_store is None:
                _default_store = BackgroundStore(
                    base_dir=Path(os.getenv("PIXELCANVAS_STORAGE_DIR", "storage"))
                )
    return _default_store
