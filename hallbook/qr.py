"""QR codes that send visitors straight to a study hall's public booking page."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

import qrcode

logger = logging.getLogger(__name__)


@dataclass
class StoredQRCode:
    file_path: Path
    public_url: str
    booking_url: str


def build_booking_url(public_domain: str, study_hall_id: int) -> str:
    return f"{public_domain.rstrip('/')}/studyhall/{study_hall_id}/booking"


def render_qr_png(data: str) -> bytes:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def store_study_hall_qr(study_hall_id: int, public_domain: str, media_root: str, media_url: str) -> StoredQRCode:
    booking_url = build_booking_url(public_domain, study_hall_id)
    png = render_qr_png(booking_url)

    directory = Path(media_root) / "qr-codes"
    directory.mkdir(parents=True, exist_ok=True)
    file_name = f"qr-{study_hall_id}-{int(time.time() * 1000)}.png"
    file_path = directory / file_name
    file_path.write_bytes(png)
    logger.info("QR code for study hall %s written to %s (%d bytes)", study_hall_id, file_path, len(png))

    return StoredQRCode(
        file_path=file_path,
        public_url=f"{media_url.rstrip('/')}/qr-codes/{file_name}",
        booking_url=booking_url,
    )
