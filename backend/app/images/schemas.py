"""Pydantic schemas and constants for the image conversion endpoints.

- TransformKind: which pipeline an endpoint runs
- TransformRequest: per-request codec parameters (quality, WebP effort)
- StoredUpload: an uploaded file persisted in the scratch directory
- *Response models: one single-field JSON body per endpoint
- ErrorResponse: body of every 4xx/5xx answer

Derived file names are a pure function of the stored upload name, so every
artifact of a request can be located (and deleted) from the upload alone.
"""
import re
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

# Multipart field carrying the image
UPLOAD_FIELD = "image"

# File size limit: 50MB
MAX_FILE_SIZE_BYTES = 50 * 1024 * 1024

DEFAULT_QUALITY = 80

# WebP compression effort range (Pillow "method"); 6 is slowest/smallest
MIN_WEBP_EFFORT = 0
MAX_WEBP_EFFORT = 6
DEFAULT_WEBP_EFFORT = 4

_LEADING_INT = re.compile(r"^[+-]?\d+")


class TransformKind(str, Enum):
    """Conversion pipelines, one per endpoint."""
    WEBP = "webp"
    OPTIMIZE = "optimize"
    OPTIMIZE_AND_CONVERT = "optimize-and-convert"


class TransformRequest(BaseModel):
    """Codec parameters for one request.

    quality is passed to the encoder as-is; out-of-range values are not
    clamped and a codec rejection surfaces as a transform failure.
    """
    kind: TransformKind
    quality: int = Field(DEFAULT_QUALITY, description="Encoder quality")
    effort: int = Field(
        DEFAULT_WEBP_EFFORT,
        ge=MIN_WEBP_EFFORT,
        le=MAX_WEBP_EFFORT,
        description="WebP compression effort",
    )

    @classmethod
    def for_kind(cls, kind: TransformKind, quality: int) -> "TransformRequest":
        effort = MAX_WEBP_EFFORT if kind is TransformKind.OPTIMIZE_AND_CONVERT else DEFAULT_WEBP_EFFORT
        return cls(kind=kind, quality=quality, effort=effort)


class StoredUpload(BaseModel):
    """An uploaded file written to the scratch directory."""
    stored_filename: str = Field(..., description="Unique filename on disk")
    path: Path = Field(..., description="Absolute path of the stored file")
    original_filename: str = Field(..., description="Filename sent by the client")
    content_type: Optional[str] = Field(None, description="MIME type sent by the client")
    size_bytes: int = Field(..., description="File size in bytes")

    @property
    def webp_path(self) -> Path:
        stem = Path(self.stored_filename).stem
        name = f"{stem}.webp"
        if name == self.stored_filename:
            # WebP upload; never write over the source
            name = f"{stem}-converted.webp"
        return self.path.with_name(name)

    @property
    def optimized_path(self) -> Path:
        return self.path.with_name(f"optimized-{self.stored_filename}")


class WebpImageResponse(BaseModel):
    webpImage: str = Field(..., description="Base64-encoded WebP image")


class OptimizedImageResponse(BaseModel):
    optimizedImage: str = Field(..., description="Base64-encoded optimized JPEG")


class OptimizedWebpImageResponse(BaseModel):
    optimizedWebpImage: str = Field(..., description="Base64-encoded WebP of the optimized JPEG")


class ErrorResponse(BaseModel):
    error: str


def parse_quality(raw: Optional[str]) -> int:
    """Parse the ``quality`` form field.

    Takes the leading integer of the trimmed text ("85" -> 85, "85.9" -> 85,
    "42px" -> 42). Missing, non-numeric or zero values fall back to
    DEFAULT_QUALITY.

    Examples:
        >>> parse_quality(None)
        80
        >>> parse_quality("abc")
        80
        >>> parse_quality(" 55 ")
        55
    """
    if raw is None:
        return DEFAULT_QUALITY
    match = _LEADING_INT.match(raw.strip())
    if not match:
        return DEFAULT_QUALITY
    return int(match.group(0)) or DEFAULT_QUALITY
