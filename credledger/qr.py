"""Verification URLs and their QR rendering."""

import base64
import io
from urllib.parse import parse_qs, urlencode, urlsplit

import qrcode
from qrcode.constants import ERROR_CORRECT_H

from .crypto import is_document_hash, normalize_hash
from .errors import ValidationError


def build_verification_url(base_url, document_hash, tx_hash=None):
    params = {"hash": normalize_hash(document_hash)}
    if tx_hash:
        params["tx"] = normalize_hash(tx_hash)
    return f"{base_url}?{urlencode(params)}"


def parse_verification_url(url):
    """Returns ``(document_hash, tx_hash)``; both must be 32-byte hex."""
    query = parse_qs(urlsplit(url or "").query)
    document_hash = (query.get("hash") or [None])[0]
    tx_hash = (query.get("tx") or [None])[0]
    if not is_document_hash(document_hash):
        raise ValidationError("Verification URL carries no valid document hash")
    if tx_hash is not None and not is_document_hash(tx_hash):
        raise ValidationError("Verification URL carries a malformed transaction hash")
    return document_hash.lower(), tx_hash.lower() if tx_hash else None


def generate_qr_png(data):
    """Render ``data`` as a PNG QR code (high error correction)."""
    qr = qrcode.QRCode(version=None, error_correction=ERROR_CORRECT_H, box_size=10, border=2)
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def generate_qr_data_url(data):
    return "data:image/png;base64," + base64.b64encode(generate_qr_png(data)).decode()
