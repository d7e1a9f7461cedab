"""
Codificación del QR de emparejamiento como data URL PNG.
"""

import base64
import io

import qrcode


def encode_qr_data_url(raw_payload: str) -> str:
    """
    Convierte el payload crudo del evento 'qr' en una imagen PNG embebida.

    Args:
        raw_payload: String emitido por WhatsApp Web.js

    Returns:
        data URL listo para un <img src=...>
    """
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=4,
    )
    qr.add_data(raw_payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buf.getvalue()).decode('ascii')}"
