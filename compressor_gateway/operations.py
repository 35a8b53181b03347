"""Operation kinds and the per-operation tables the gateway dispatches on."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .errors import InvalidInput

PDF_MIME = "application/pdf"
DOC_MIME = "application/msword"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

PDF_TYPES: FrozenSet[str] = frozenset({PDF_MIME})
IMAGE_TYPES: FrozenSet[str] = frozenset({"image/jpeg", "image/png", "image/webp"})
WORD_TYPES: FrozenSet[str] = frozenset({DOC_MIME, DOCX_MIME})

IMAGE_SUFFIXES: Dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}

INPUT_SUFFIXES: Dict[str, str] = {
    PDF_MIME: ".pdf",
    DOC_MIME: ".doc",
    DOCX_MIME: ".docx",
    **IMAGE_SUFFIXES,
}

DEFAULT_LEVEL = 50
MIN_LEVEL = 0
MAX_LEVEL = 100
MIN_QUALITY = 0.1


class OperationKind(str, Enum):
    COMPRESS_PDF = "compress-pdf"
    COMPRESS_IMAGE = "compress-image"
    CONVERT_PDF_TO_WORD = "convert-pdf-to-word"
    CONVERT_WORD_TO_PDF = "convert-word-to-pdf"
    REMOVE_WATERMARK_PDF = "remove-watermark-pdf"


DEFAULT_OPERATION = OperationKind.COMPRESS_PDF


@dataclass(frozen=True)
class OperationSpec:
    accepted_types: FrozenSet[str]
    output_type: Optional[str]  # None: same as the input media type
    output_suffix: Optional[str]  # None: derived from the input media type
    artifact_tag: str
    remote_path: str
    uses_level: bool


OPERATIONS: Dict[OperationKind, OperationSpec] = {
    OperationKind.COMPRESS_PDF: OperationSpec(
        accepted_types=PDF_TYPES,
        output_type=PDF_MIME,
        output_suffix=".pdf",
        artifact_tag="compressed",
        remote_path="/compress",
        uses_level=True,
    ),
    OperationKind.COMPRESS_IMAGE: OperationSpec(
        accepted_types=IMAGE_TYPES,
        output_type=None,
        output_suffix=None,
        artifact_tag="compressed",
        remote_path="/compress/image",
        uses_level=True,
    ),
    OperationKind.CONVERT_PDF_TO_WORD: OperationSpec(
        accepted_types=PDF_TYPES,
        output_type=DOCX_MIME,
        output_suffix=".docx",
        artifact_tag="converted",
        remote_path="/convert/pdf-to-word",
        uses_level=False,
    ),
    OperationKind.CONVERT_WORD_TO_PDF: OperationSpec(
        accepted_types=WORD_TYPES,
        output_type=PDF_MIME,
        output_suffix=".pdf",
        artifact_tag="converted",
        remote_path="/convert/word-to-pdf",
        uses_level=False,
    ),
    OperationKind.REMOVE_WATERMARK_PDF: OperationSpec(
        accepted_types=PDF_TYPES,
        output_type=PDF_MIME,
        output_suffix=".pdf",
        artifact_tag="nowatermark",
        remote_path="/watermark/remove/pdf",
        uses_level=False,
    ),
}


def spec_for(operation: OperationKind) -> OperationSpec:
    return OPERATIONS[operation]


def parse_operation(raw: Optional[str]) -> OperationKind:
    """Map a wire name onto an operation kind, defaulting to PDF compression."""
    if raw is None or not raw.strip():
        return DEFAULT_OPERATION
    try:
        return OperationKind(raw.strip().lower())
    except ValueError:
        raise InvalidInput(f"Unsupported operation: {raw.strip()}") from None


def parse_level(raw: Optional[str]) -> int:
    if raw is None or not str(raw).strip():
        return DEFAULT_LEVEL
    try:
        level = int(str(raw).strip())
    except ValueError:
        raise InvalidInput("compressionLevel must be an integer") from None
    if level < MIN_LEVEL or level > MAX_LEVEL:
        raise InvalidInput(f"compressionLevel must be between {MIN_LEVEL} and {MAX_LEVEL}")
    return level


def quality_for_level(level: int) -> float:
    """Higher compression level means lower output quality, floored at 0.1."""
    return max(MIN_QUALITY, 1 - level / 100)


def normalize_media_type(raw: Optional[str]) -> str:
    """Strip parameters (``; charset=...``) and lower-case a declared media type."""
    if not raw:
        return ""
    return raw.split(";", 1)[0].strip().lower()


def is_accepted(operation: OperationKind, media_type: Optional[str]) -> bool:
    return normalize_media_type(media_type) in spec_for(operation).accepted_types


def input_suffix(media_type: str) -> str:
    return INPUT_SUFFIXES.get(normalize_media_type(media_type), ".bin")


def output_content_type(operation: OperationKind, input_type: str) -> str:
    spec = spec_for(operation)
    return spec.output_type or normalize_media_type(input_type)


def output_suffix(operation: OperationKind, input_type: str) -> str:
    spec = spec_for(operation)
    return spec.output_suffix or input_suffix(input_type)


def artifact_file_name(identifier: str, operation: OperationKind, input_type: str) -> str:
    """Stored file name, e.g. ``<id>_compressed.pdf``."""
    tag = spec_for(operation).artifact_tag
    return f"{identifier}_{tag}{output_suffix(operation, input_type)}"
