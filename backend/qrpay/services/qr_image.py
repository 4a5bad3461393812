"""
QR image rendering.

Encodes the signed payload JSON into a PNG QR code and returns it as a data URL
ready for an <img> tag.
"""
import base64
from io import BytesIO

import qrcode


def render_data_url(content: str) -> str:
    """
    Render content as a base64 PNG data URL.

    High error correction so a printed or partially obscured code still scans.
    """
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=10,
        border=2,
    )
    qr.add_data(content)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
