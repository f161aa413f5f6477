from __future__ import annotations

import io
import json
from typing import Any

import qrcode
from qrcode.image.svg import SvgPathImage

from agriqcert.core.errors import ValidationError


QR_PAYLOAD_TYPE = "AgriQCert_Certificate"
# Older printed labels used the short type name.
QR_PAYLOAD_TYPES = (QR_PAYLOAD_TYPE, "AgriQCert")


def encode_qr_payload(
    *,
    certificate_id: str,
    batch_id: str,
    credential_url: str | None,
    credential_hash: str | None,
) -> str:
    # Compact JSON keeps the printed code small enough for low-resolution scanners.
    payload = {
        "type": QR_PAYLOAD_TYPE,
        "certId": certificate_id,
        "batchId": batch_id,
        "url": credential_url,
        "hash": credential_hash,
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def parse_qr_payload(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid QR payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Invalid QR payload: expected a JSON object")
    return payload


def render_qr_svg(data: str) -> str:
    # SVG output avoids a Pillow dependency for the public label endpoint.
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image(image_factory=SvgPathImage)
    buffer = io.BytesIO()
    image.save(buffer)
    return buffer.getvalue().decode("utf-8")
