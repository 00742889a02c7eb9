from __future__ import annotations

import io
import sys
from typing import TextIO

import qrcode
from loguru import logger


def render_link_challenge(code: str, *, out: TextIO | None = None) -> str:
    """Render a link challenge as a terminal QR code and return the ASCII art."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(code)
    qr.make(fit=True)
    buf = io.StringIO()
    qr.print_ascii(out=buf, invert=True)
    art = buf.getvalue()

    logger.info(f"Link challenge received, scan to link this device (raw: {code})")
    stream = out if out is not None else sys.stdout
    stream.write(art)
    stream.flush()
    return art


__all__ = ["render_link_challenge"]
