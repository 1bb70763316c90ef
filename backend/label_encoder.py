# backend/label_encoder.py

"""
Label encoder: QR (matrix) and Code 128 (linear) PNG images.

Stateless and deterministic: identical input always yields byte-identical
PNGs. The linear barcode carries the short label code; the QR code carries
the matrix payload (the label code itself, or the descriptive payload built
by build_matrix_payload).
"""

from io import BytesIO
from typing import Optional

import barcode
import qrcode
from barcode.writer import ImageWriter
from qrcode.exceptions import DataOverflowError
from qrcode.image.pil import PilImage

from weighing_errors import PayloadTooLongError, InvalidPayloadError
from weighing_models import EncodedLabel

# Capacity bounds for the 70 mm × 25 mm label
DEFAULT_MAX_QR_VERSION = 10
DEFAULT_MAX_BARCODE_LENGTH = 32

MATRIX_ENCODING = "QR code"
LINEAR_ENCODING = "Code 128"

QR_BOX_SIZE = 10
QR_BORDER = 1

BARCODE_WRITER_OPTIONS = {
    "write_text": False,
    "module_height": 8,
    "module_width": 0.2,
    "quiet_zone": 2,
    "dpi": 300
}


def build_matrix_payload(
    label_code: str,
    compound_name: str,
    cas_number: str,
    concentration: str,
    date: str,
    prepared_by: str
) -> str:
    """Pipe-delimited QR payload: LBL|code=...|name=...|cas=...|c=...|dt=...|by=..."""
    parts = [
        f"LBL|code={label_code}",
        f"name={compound_name}",
        f"cas={cas_number}",
        f"c={concentration}",
        f"dt={date}",
        f"by={prepared_by}"
    ]
    return "|".join(part.replace("\n", " ") for part in parts)


class LabelEncoder:
    def __init__(
        self,
        max_qr_version: int = DEFAULT_MAX_QR_VERSION,
        max_barcode_length: int = DEFAULT_MAX_BARCODE_LENGTH
    ):
        if not 1 <= max_qr_version <= 40:
            raise ValueError(f"QR version must be between 1 and 40, got {max_qr_version}")
        self.max_qr_version = max_qr_version
        self.max_barcode_length = max_barcode_length

    def encode_matrix(self, payload: str) -> bytes:
        if not payload:
            raise InvalidPayloadError(MATRIX_ENCODING, "payload is empty")

        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=QR_BOX_SIZE,
            border=QR_BORDER
        )
        qr.add_data(payload)
        try:
            qr.make(fit=True)
        except DataOverflowError:
            raise PayloadTooLongError(MATRIX_ENCODING, len(payload), f"max version {self.max_qr_version}")
        if qr.version > self.max_qr_version:
            raise PayloadTooLongError(MATRIX_ENCODING, len(payload), f"max version {self.max_qr_version}")

        img = qr.make_image(image_factory=PilImage, fill_color="black", back_color="white")
        buffer = BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()

    def encode_linear(self, code: str) -> bytes:
        if not code:
            raise InvalidPayloadError(LINEAR_ENCODING, "payload is empty")
        if not all(32 <= ord(ch) < 127 for ch in code):
            raise InvalidPayloadError(LINEAR_ENCODING, "only printable ASCII characters are supported")
        if len(code) > self.max_barcode_length:
            raise PayloadTooLongError(LINEAR_ENCODING, len(code), f"max {self.max_barcode_length} characters")

        buffer = BytesIO()
        code128 = barcode.get("code128", code, writer=ImageWriter())
        code128.write(buffer, dict(BARCODE_WRITER_OPTIONS))
        return buffer.getvalue()

    def encode(self, label_code: str, matrix_payload: Optional[str] = None) -> EncodedLabel:
        """Render the label code (and optional richer QR payload) as two PNG images."""
        return EncodedLabel(
            matrix_image=self.encode_matrix(matrix_payload or label_code),
            linear_image=self.encode_linear(label_code)
        )
