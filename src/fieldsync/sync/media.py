"""
Photo validation and compression before upload.

Validation runs first and is terminal for the photo:
  1. FileMissing: the local ref no longer resolves to a file
  2. TooLarge: raw size above the ceiling (10 MiB)
  3. UnsupportedType: first bytes match neither JPEG nor PNG
     (best-effort: an unreadable probe does not block)

Compression then resizes to a bounded width and re-encodes as JPEG. If the
result is still more than twice the target size, a single narrower /
lower-quality pass is made from the original. Never more than two passes.
The source file is never modified; output goes to the media cache dir.
"""
import asyncio
import logging
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

from PIL import Image, ImageOps

from fieldsync.config import Settings, get_settings
from fieldsync.sync.outcomes import (
    FileMissingError,
    MediaCompressionError,
    MediaTooLargeError,
    UnsupportedMediaTypeError,
)

logger = logging.getLogger(__name__)

JPEG_SIGNATURE = b"\xff\xd8\xff"
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
_PROBE_BYTES = 8


@dataclass
class PreparedMedia:
    path: Path
    original_size: int
    compressed_size: int

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def discard(self) -> None:
        self.path.unlink(missing_ok=True)


def resolve_local_path(local_ref: str) -> Optional[Path]:
    """Map a file:// URI or plain path to a Path. Other schemes -> None."""
    if local_ref.startswith("file://"):
        return Path(unquote(urlparse(local_ref).path))
    if "://" in local_ref:
        return None
    return Path(local_ref)


class MediaPipeline:
    """Validates and compresses one photo at a time."""

    def __init__(self, settings: Optional[Settings] = None, cache_dir: Optional[Path] = None):
        self.settings = settings or get_settings()
        if cache_dir is None:
            configured = self.settings.media_cache_dir
            cache_dir = Path(configured) if configured else Path(tempfile.gettempdir()) / "fieldsync-media"
        self.cache_dir = Path(cache_dir)

    async def prepare_async(self, local_ref: str) -> PreparedMedia:
        """Run prepare() in the thread pool so Pillow doesn't block the loop."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self.prepare, local_ref)

    def prepare(self, local_ref: str) -> PreparedMedia:
        """
        Validate and compress the photo at `local_ref`.

        Raises:
            FileMissingError, MediaTooLargeError, UnsupportedMediaTypeError:
                validation failed; the photo never reaches compression.
            MediaCompressionError: re-encoding failed.
        """
        path = resolve_local_path(local_ref)
        if path is None or not path.is_file():
            raise FileMissingError(f"Photo not found: {local_ref}")

        original_size = path.stat().st_size
        if original_size > self.settings.max_media_bytes:
            raise MediaTooLargeError(
                f"Photo is {original_size} bytes (limit {self.settings.max_media_bytes})"
            )
        self._probe_signature(path)

        s = self.settings
        out = self._encode(path, s.media_max_width, s.media_quality)
        if out.stat().st_size > 2 * s.media_target_bytes:
            logger.debug("First pass left %s at %d bytes; recompressing", path.name, out.stat().st_size)
            out.unlink(missing_ok=True)
            out = self._encode(path, s.media_fallback_width, s.media_fallback_quality)

        compressed_size = out.stat().st_size
        logger.info(
            "Image compressed: %d -> %d bytes (%d%% reduction)",
            original_size,
            compressed_size,
            round((1 - compressed_size / original_size) * 100) if original_size else 0,
        )
        return PreparedMedia(path=out, original_size=original_size, compressed_size=compressed_size)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _probe_signature(self, path: Path) -> None:
        try:
            with open(path, "rb") as f:
                head = f.read(_PROBE_BYTES)
        except OSError as exc:
            logger.debug("Could not probe %s (%s); continuing", path, exc)
            return
        if not (head.startswith(JPEG_SIGNATURE) or head.startswith(PNG_SIGNATURE)):
            raise UnsupportedMediaTypeError(f"{path.name} is not a JPEG or PNG image")

    def _encode(self, source: Path, max_width: int, quality: int) -> Path:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        out = self.cache_dir / f"{uuid.uuid4().hex}.jpg"
        try:
            with Image.open(source) as img:
                img = ImageOps.exif_transpose(img).convert("RGB")
                if img.width > max_width:
                    height = max(1, round(img.height * max_width / img.width))
                    img = img.resize((max_width, height), Image.Resampling.LANCZOS)
                img.save(out, format="JPEG", quality=quality, optimize=True)
        except (OSError, ValueError) as exc:
            out.unlink(missing_ok=True)
            raise MediaCompressionError(f"Failed to compress {source.name}: {exc}") from exc
        return out
