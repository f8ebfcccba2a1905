"""Image transform service.

Runs the three conversion pipelines against a stored upload with Pillow and
base64-encodes the final file for the JSON response:

    webp                  upload -> <stem>.webp
    optimize              upload -> optimized-<name>        (JPEG)
    optimize-and-convert  upload -> optimized-<name> -> <stem>.webp (effort 6)

Pillow calls block, so they run on the default executor. Every output path is
registered with the request's TempFileScope before it is written; any codec or
I/O error is re-raised as TransformFailure.
"""
import asyncio
import base64
import functools
import logging
from pathlib import Path
from typing import Callable, Optional, TypeVar

from PIL import Image

from app.errors import TransformFailure

from .schemas import StoredUpload, TransformKind, TransformRequest
from .storage import TempFileScope

logger = logging.getLogger(__name__)

T = TypeVar("T")

_JPEG_MODES = ("RGB", "L", "CMYK")
_WEBP_MODES = ("RGB", "RGBA")


def _has_alpha(im: Image.Image) -> bool:
    return "A" in im.getbands() or "transparency" in im.info


def save_webp(source: Path, target: Path, quality: int, effort: int) -> int:
    """Re-encode *source* as lossy WebP. Returns the output size in bytes."""
    with Image.open(source) as im:
        if im.mode not in _WEBP_MODES:
            im = im.convert("RGBA" if _has_alpha(im) else "RGB")
        im.save(target, format="WEBP", quality=quality, method=effort)
    return target.stat().st_size


def save_optimized_jpeg(source: Path, target: Path, quality: int) -> int:
    """Re-encode *source* as an optimized progressive JPEG.

    Alpha and palette images are flattened to RGB first, since JPEG has no
    alpha channel.
    """
    with Image.open(source) as im:
        if im.mode not in _JPEG_MODES:
            im = im.convert("RGB")
        im.save(target, format="JPEG", quality=quality, optimize=True, progressive=True)
    return target.stat().st_size


class ImageTransformService:
    """Singleton service running conversion pipelines."""

    _instance: Optional["ImageTransformService"] = None

    @classmethod
    def get_instance(cls) -> "ImageTransformService":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    async def _run_blocking(self, step: str, fn: Callable[..., T], *args) -> T:
        try:
            return await asyncio.get_event_loop().run_in_executor(
                None, functools.partial(fn, *args)
            )
        except Exception as e:
            logger.error("%s failed: %s", step, e)
            raise TransformFailure(str(e)) from e

    # -----------------------------------------------------------------------
    # Pipeline steps
    # -----------------------------------------------------------------------

    async def convert_to_webp(
        self, source: Path, target: Path, request: TransformRequest, scope: TempFileScope
    ) -> Path:
        scope.register(target)
        size = await self._run_blocking(
            "WebP conversion", save_webp, source, target, request.quality, request.effort
        )
        logger.info(
            "Converted %s -> %s (quality=%d, effort=%d, %d bytes)",
            source.name, target.name, request.quality, request.effort, size,
        )
        return target

    async def optimize_image(
        self, source: Path, target: Path, request: TransformRequest, scope: TempFileScope
    ) -> Path:
        scope.register(target)
        size = await self._run_blocking(
            "JPEG optimization", save_optimized_jpeg, source, target, request.quality
        )
        logger.info(
            "Optimized %s -> %s (quality=%d, %d bytes)",
            source.name, target.name, request.quality, size,
        )
        return target

    async def transform(
        self, upload: StoredUpload, request: TransformRequest, scope: TempFileScope
    ) -> Path:
        """Run the pipeline selected by ``request.kind`` and return the final file.

        The upload is deleted as soon as the first step has consumed it, and a
        chained intermediate as soon as the second step has. On failure the
        caller's scope removes whatever was created.
        """
        if request.kind is TransformKind.WEBP:
            output = await self.convert_to_webp(upload.path, upload.webp_path, request, scope)
            scope.release(upload.path)
            return output

        if request.kind is TransformKind.OPTIMIZE:
            output = await self.optimize_image(upload.path, upload.optimized_path, request, scope)
            scope.release(upload.path)
            return output

        intermediate = await self.optimize_image(upload.path, upload.optimized_path, request, scope)
        scope.release(upload.path)
        output = await self.convert_to_webp(intermediate, upload.webp_path, request, scope)
        scope.release(intermediate)
        return output

    # -----------------------------------------------------------------------
    # Response encoding
    # -----------------------------------------------------------------------

    async def encode(self, path: Path) -> str:
        """Read *path* fully and return it as base64 text."""
        data = await self._run_blocking("Reading output", path.read_bytes)
        return base64.b64encode(data).decode("ascii")

    async def process(
        self, upload: StoredUpload, request: TransformRequest, scope: TempFileScope
    ) -> str:
        output = await self.transform(upload, request, scope)
        return await self.encode(output)
