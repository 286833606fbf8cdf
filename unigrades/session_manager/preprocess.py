"""Captcha image pre-processing for the self-hosted recognition model.

Small vision models read the portal's captcha far better when the image is
cropped tightly around the glyphs, so the border is shaved, the image is
adaptively thresholded and cropped to the dense rows/columns of ink.
"""

from __future__ import annotations

import io
from datetime import datetime

from PIL import Image, ImageFilter

from ..config import OLLAMA_DEBUG_SAVE_CROPS, SCREENSHOT_DIR
from ..log import Logger, get_logger

logger = get_logger(__name__)

BORDER_SHAVE = 3
ADAPTIVE_BLOCK_SIZE = 11
ADAPTIVE_C = 2
ROW_DENSITY_THRESHOLD = 6
COL_DENSITY_THRESHOLD = 4
CROP_PADDING = 2


def _gaussian_sigma(block_size: int) -> float:
    # same sigma OpenCV derives for a Gaussian kernel of this size
    return 0.3 * ((block_size - 1) * 0.5 - 1) + 0.8


def _dense_span(counts: list[int], threshold: int) -> tuple[int, int] | None:
    dense = [i for i, count in enumerate(counts) if count > threshold]
    if not dense:
        return None
    return dense[0], dense[-1]


def crop_for_ollama(image_bytes: bytes, log: Logger = logger) -> bytes:
    """Return a tightly cropped PNG, or the original bytes if anything goes wrong."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as source:
            width, height = source.size
            if width <= BORDER_SHAVE * 2 + 2 or height <= BORDER_SHAVE * 2 + 2:
                return image_bytes

            inner = source.convert("RGBA").crop(
                (BORDER_SHAVE, BORDER_SHAVE, width - BORDER_SHAVE, height - BORDER_SHAVE)
            )
        inner_w, inner_h = inner.size
        gray = inner.convert("L")
        blurred = gray.filter(ImageFilter.GaussianBlur(_gaussian_sigma(ADAPTIVE_BLOCK_SIZE)))

        gray_px = list(gray.getdata())
        blur_px = list(blurred.getdata())
        mask = [g <= b - ADAPTIVE_C for g, b in zip(gray_px, blur_px)]

        row_counts = [sum(mask[y * inner_w:(y + 1) * inner_w]) for y in range(inner_h)]
        rows = _dense_span(row_counts, ROW_DENSITY_THRESHOLD)
        y1, y2 = rows if rows else (0, inner_h)

        scan_start = min(max(y1, 0), inner_h - 1)
        scan_end = y2 if rows else inner_h
        if scan_end <= scan_start:
            scan_end = min(inner_h, scan_start + 1)
        col_counts = [
            sum(mask[y * inner_w + x] for y in range(scan_start, scan_end))
            for x in range(inner_w)
        ]
        cols = _dense_span(col_counts, COL_DENSITY_THRESHOLD)
        x1, x2 = cols if cols else (0, inner_w)

        top = min(max(y1 - CROP_PADDING, 0), inner_h - 1)
        bottom = min(max(min(inner_h, y2 + CROP_PADDING) + 1, top + 1), inner_h)
        left = min(max(x1 - CROP_PADDING, 0), inner_w - 1)
        right = min(max(min(inner_w, x2 + CROP_PADDING) + 1, left + 1), inner_w)
        if right <= left or bottom <= top:
            return image_bytes

        cropped = inner.crop((left, top, right, bottom))
        out = io.BytesIO()
        cropped.save(out, format="PNG")
        data = out.getvalue()
        log.info(f"[Captcha] Ollama pre-crop applied: {width}x{height} -> {right - left}x{bottom - top}")
        _save_debug_crop(data, log)
        return data
    except Exception as e:
        log.warning(f"[Captcha] Ollama pre-crop failed, using original image: {e}")
        return image_bytes


def _save_debug_crop(data: bytes, log: Logger):
    if not OLLAMA_DEBUG_SAVE_CROPS:
        return
    try:
        SCREENSHOT_DIR.mkdir(parents=True, exist_ok=True)
        path = SCREENSHOT_DIR / f"{datetime.now().strftime('%Y-%m-%dT%H-%M-%S-%f')}_ollama_cropped.png"
        path.write_bytes(data)
        log.info(f"[Captcha] Saved debug crop image: {path}")
    except OSError as e:
        log.warning(f"[Captcha] Failed to save debug crop image: {e}")
