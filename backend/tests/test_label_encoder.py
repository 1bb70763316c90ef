# backend/tests/test_label_encoder.py

"""
Label encoder tests: no database and no concurrency set-up needed.
"""

import pytest

from label_encoder import LabelEncoder, build_matrix_payload
from weighing_errors import PayloadTooLongError, InvalidPayloadError

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class TestEncode:

    def test_returns_two_png_images(self, encoder):
        encoded = encoder.encode("LB251018-000001")

        assert encoded.matrix_image.startswith(PNG_SIGNATURE)
        assert encoded.linear_image.startswith(PNG_SIGNATURE)

    def test_deterministic(self, encoder):
        payload = build_matrix_payload(
            "LB251018-000001", "Atrazine", "1912-24-9", "1.250 mg/mL", "2025-10-18", "analyst"
        )
        first = encoder.encode("LB251018-000001", payload)
        second = LabelEncoder().encode("LB251018-000001", payload)

        assert first.matrix_image == second.matrix_image
        assert first.linear_image == second.linear_image

    def test_matrix_payload_changes_only_matrix(self, encoder):
        plain = encoder.encode("LB251018-000001")
        rich = encoder.encode("LB251018-000001", "LBL|code=LB251018-000001|name=Atrazine")

        assert plain.linear_image == rich.linear_image
        assert plain.matrix_image != rich.matrix_image

    def test_different_codes_differ(self, encoder):
        assert encoder.encode("LB251018-000001").linear_image != encoder.encode("LB251018-000002").linear_image

    def test_base64_view(self, encoder):
        images = encoder.encode("LB251018-000001").to_base64()

        assert set(images) == {"qr_code", "barcode"}
        assert images["qr_code"].startswith("iVBORw0KGgo")


class TestCapacity:

    def test_matrix_payload_too_long(self):
        encoder = LabelEncoder(max_qr_version=2)

        with pytest.raises(PayloadTooLongError) as exc_info:
            encoder.encode("LB251018-000001", "x" * 200)

        assert exc_info.value.error_code == "PAYLOAD_TOO_LONG"
        assert exc_info.value.encoding == "QR code"

    def test_matrix_payload_beyond_any_version(self, encoder):
        with pytest.raises(PayloadTooLongError):
            encoder.encode_matrix("x" * 5000)

    def test_barcode_too_long(self):
        encoder = LabelEncoder(max_barcode_length=8)

        with pytest.raises(PayloadTooLongError) as exc_info:
            encoder.encode("LB251018-000001")

        assert exc_info.value.encoding == "Code 128"

    def test_empty_payload(self, encoder):
        with pytest.raises(InvalidPayloadError):
            encoder.encode("")

    def test_non_ascii_barcode(self, encoder):
        with pytest.raises(InvalidPayloadError):
            encoder.encode_linear("LB-µg")

    def test_unicode_matrix_payload_allowed(self, encoder):
        encoded = encoder.encode("LB251018-000001", "LBL|code=LB251018-000001|c=1250.000 µg/mL")

        assert encoded.matrix_image.startswith(PNG_SIGNATURE)

    def test_invalid_max_version(self):
        with pytest.raises(ValueError):
            LabelEncoder(max_qr_version=41)


class TestMatrixPayload:

    def test_payload_layout(self):
        payload = build_matrix_payload(
            "LB251018-000001", "Atrazine", "1912-24-9", "1.250 mg/mL", "2025-10-18", "analyst"
        )

        assert payload == (
            "LBL|code=LB251018-000001|name=Atrazine|cas=1912-24-9"
            "|c=1.250 mg/mL|dt=2025-10-18|by=analyst"
        )
