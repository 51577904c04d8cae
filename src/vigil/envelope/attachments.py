# src/vigil/envelope/attachments.py
"""File attachments carried as envelope items.

Attachments travel in the same envelope as the event they belong to. Each
one is limited to 100 MiB, as is the sum of all attachments on one event.
"""

import json
import mimetypes
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from vigil.contracts.defaults import INTERNAL_DEFAULTS
from vigil.contracts.enums import ItemType
from vigil.envelope.codec import EnvelopeItem

MAX_ATTACHMENT_SIZE = int(INTERNAL_DEFAULTS["attachments"]["max_attachment_size"])
MAX_TOTAL_ATTACHMENTS_SIZE = int(INTERNAL_DEFAULTS["attachments"]["max_total_size"])
DEFAULT_CONTENT_TYPE = str(INTERNAL_DEFAULTS["attachments"]["default_content_type"])
DEFAULT_ATTACHMENT_TYPE = str(INTERNAL_DEFAULTS["attachments"]["default_attachment_type"])

ATTACHMENT_TYPES = frozenset(
    {
        "event.attachment",
        "event.minidump",
        "event.applecrashreport",
        "event.view_hierarchy",
        "unreal.context",
        "unreal.logs",
    }
)


@dataclass(frozen=True, slots=True)
class Attachment:
    """A named blob attached to an event.

    content_type and attachment_type are resolved at encoding time when
    left unset.
    """

    filename: str
    data: bytes | str
    content_type: str | None = None
    attachment_type: str | None = None

    @property
    def size(self) -> int:
        """Encoded size in bytes (text counts as UTF-8)."""
        if isinstance(self.data, str):
            return len(self.data.encode("utf-8"))
        return len(self.data)

    def encoded(self) -> bytes:
        return self.data.encode("utf-8") if isinstance(self.data, str) else self.data

    @classmethod
    def from_path(cls, path: Path, *, attachment_type: str | None = None) -> "Attachment":
        """Read a file from disk as an attachment named after the file."""
        return cls(filename=path.name, data=path.read_bytes(), attachment_type=attachment_type)


@dataclass(frozen=True, slots=True)
class AttachmentValidationResult:
    valid: bool
    size: int
    error: str | None = None


def infer_content_type(filename: str) -> str:
    """Guess the MIME type from the file extension (octet-stream if unknown)."""
    content_type, _ = mimetypes.guess_type(filename, strict=False)
    return content_type or DEFAULT_CONTENT_TYPE


def _format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ("KB", "MB", "GB"):
        value /= 1024
        if value < 1024 or unit == "GB":
            break
    return f"{value:.1f} {unit}"


def validate_attachment(attachment: Attachment) -> AttachmentValidationResult:
    """Check filename, emptiness and the per-attachment size limit."""
    if not attachment.filename.strip():
        return AttachmentValidationResult(valid=False, size=0, error="Attachment filename must be a non-empty string")
    if not isinstance(attachment.data, (bytes, str)):
        return AttachmentValidationResult(valid=False, size=0, error="Attachment data must be bytes or str")

    size = attachment.size
    if size == 0:
        return AttachmentValidationResult(valid=False, size=0, error="Attachment data cannot be empty")
    if size > MAX_ATTACHMENT_SIZE:
        return AttachmentValidationResult(
            valid=False,
            size=size,
            error=f"Attachment size ({_format_bytes(size)}) exceeds maximum allowed size ({_format_bytes(MAX_ATTACHMENT_SIZE)})",
        )
    return AttachmentValidationResult(valid=True, size=size)


def validate_attachments_size(attachments: Iterable[Attachment]) -> AttachmentValidationResult:
    """Validate every attachment, then the combined size.

    Returns the first failing individual result, if any.
    """
    total = 0
    for attachment in attachments:
        result = validate_attachment(attachment)
        if not result.valid:
            return result
        total += result.size
    if total > MAX_TOTAL_ATTACHMENTS_SIZE:
        return AttachmentValidationResult(
            valid=False,
            size=total,
            error=f"Total attachments size ({_format_bytes(total)}) exceeds maximum allowed ({_format_bytes(MAX_TOTAL_ATTACHMENTS_SIZE)})",
        )
    return AttachmentValidationResult(valid=True, size=total)


def create_attachment_item(attachment: Attachment) -> EnvelopeItem:
    """Encode an attachment as an ``attachment`` envelope item."""
    return EnvelopeItem.create(
        ItemType.ATTACHMENT,
        attachment.encoded(),
        filename=attachment.filename,
        content_type=attachment.content_type or infer_content_type(attachment.filename),
        attachment_type=attachment.attachment_type or DEFAULT_ATTACHMENT_TYPE,
    )


def text_attachment(filename: str, text: str, content_type: str = "text/plain") -> Attachment:
    return Attachment(filename=filename, data=text, content_type=content_type)


def json_attachment(filename: str, value: Any) -> Attachment:
    return Attachment(filename=filename, data=json.dumps(value, indent=2, default=str), content_type="application/json")


def binary_attachment(filename: str, data: bytes, content_type: str | None = None) -> Attachment:
    return Attachment(filename=filename, data=data, content_type=content_type or DEFAULT_CONTENT_TYPE)
