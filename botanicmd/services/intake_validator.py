"""
Intake validation: the last check before an attempt may cost anything.

Images are accepted only when the leading bytes match a known image
signature. The declared MIME type must be on the allow-list too, but it is
never sufficient on its own: a renamed file must not reach the AI call.
Validation is a pure predicate and performs no I/O.
"""

from botanicmd.config import IntakeConfig
from botanicmd.models.workflow import IdentificationInput, ImageInput, IntakeDecision, TextInput

JPEG_SIGNATURE = b"\xff\xd8\xff"
PNG_SIGNATURE = b"\x89PNG"
GIF_SIGNATURE = b"GIF8"
RIFF_SIGNATURE = b"RIFF"
WEBP_FOURCC = b"WEBP"


def sniff_image_type(data: bytes) -> str | None:
    """Return the MIME type implied by the file signature, or None."""
    if data.startswith(JPEG_SIGNATURE):
        return "image/jpeg"
    if data.startswith(PNG_SIGNATURE):
        return "image/png"
    if data.startswith(GIF_SIGNATURE):
        return "image/gif"
    # RIFF container: "RIFF" <4-byte size> "WEBP"
    if data.startswith(RIFF_SIGNATURE) and data[8:12] == WEBP_FOURCC:
        return "image/webp"
    return None


class IntakeValidator:
    """Accepts or rejects raw identification input."""

    def __init__(self, config: IntakeConfig | None = None) -> None:
        self.config = config or IntakeConfig()

    def validate_image(self, image: ImageInput) -> IntakeDecision:
        if image.size == 0:
            return IntakeDecision.reject("empty_file")
        if image.size > self.config.max_image_bytes:
            return IntakeDecision.reject("file_too_large")

        mime_type = image.mime_type.split(";")[0].strip().lower()
        if mime_type not in self.config.allowed_mime_types:
            return IntakeDecision.reject("unsupported_type")

        if sniff_image_type(image.data) is None:
            return IntakeDecision.reject("not_an_image")
        return IntakeDecision.accept()

    def validate_query(self, text: TextInput) -> IntakeDecision:
        length = len(text.query.strip())
        if length < self.config.min_query_length:
            return IntakeDecision.reject("query_too_short")
        if length > self.config.max_query_length:
            return IntakeDecision.reject("query_too_long")
        return IntakeDecision.accept()

    def validate(self, intake: IdentificationInput) -> IntakeDecision:
        if isinstance(intake, ImageInput):
            return self.validate_image(intake)
        return self.validate_query(intake)
