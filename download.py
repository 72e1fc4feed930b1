"""Attachment builder for POST /api/download. The text is sent back as UTF-8 bytes with a media type chosen by format."""

from dataclasses import dataclass
from typing import Optional

from exceptions import QueryValidationError

FILENAME_STEM = "llm_response"

MEDIA_TYPES = {
    "txt": "text/plain",
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}

UNSUPPORTED_FORMAT_MESSAGE = "Unsupported format. Supported formats are: txt, pdf, docx."


@dataclass(frozen=True)
class Attachment:
    content: bytes
    media_type: str
    filename: str

    @property
    def content_disposition(self) -> str:
        return f"attachment; filename={self.filename}"


def build_attachment(text: Optional[str], fmt: Optional[str] = "txt") -> Attachment:
    """
    Package response text as a downloadable file.

    Raises QueryValidationError for empty text or an unknown format.
    """
    if not text:
        raise QueryValidationError("Response text cannot be empty")

    extension = (fmt or "txt").strip().lower()
    media_type = MEDIA_TYPES.get(extension)
    if media_type is None:
        raise QueryValidationError(UNSUPPORTED_FORMAT_MESSAGE)

    return Attachment(
        content=text.encode("utf-8"),
        media_type=media_type,
        filename=f"{FILENAME_STEM}.{extension}",
    )
