"""Render KHQR payloads as PNG data URLs for display on the POS screen."""

import segno


def to_data_url(payload: str, scale: int = 8, border: int = 2) -> str:
    qr = segno.make(payload, error="m", micro=False)
    return qr.png_data_uri(scale=scale, border=border)
