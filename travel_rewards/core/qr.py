from __future__ import annotations
from io import BytesIO
import secrets
import string

import qrcode

QR_PREFIX = "TRV"
_CODE_ALPHABET = string.ascii_uppercase + string.digits

def normalize_code(code: str | None) -> str:
    return (code or "").strip().lower()

def new_destination_code() -> str:
    """Token printed on a destination's QR poster, e.g. ``TRV-9F3K2QXW7HDA``."""
    return f"{QR_PREFIX}-{secrets.token_hex(6).upper()}"

def new_redemption_code(length: int = 8) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))

def render_qr_png(payload: str) -> bytes:
    img = qrcode.make(payload)
    b = BytesIO(); img.save(b, format="PNG")
    return b.getvalue()
