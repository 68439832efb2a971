"""
utils.py

Decoding, timing, timeout and error helpers for the OCR module.

Handles:
- Base64 decoding (strict, but tolerant of whitespace and missing padding)
- Image decoding to RawImage via Pillow
- Racing blocking calls against a deadline on their own daemon threads
- Exception types raised at stage boundaries
"""

import base64
import binascii
import io
import itertools
import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, TypeVar

from PIL import Image, UnidentifiedImageError

from local_ocr.schemas import RawImage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OCRError(Exception):
    """Base class for OCR pipeline failures."""

    pass


class OCRDecodeError(OCRError):
    """Raised when a payload cannot be decoded (base64 or image bytes)."""

    pass


class OCRTimeoutError(OCRError):
    """Raised when a blocking call does not finish before its deadline."""

    pass


class OCRStageError(OCRError):
    """Raised when one pipeline stage fails for one page."""

    def __init__(self, stage: str, page_num: int, message: str):
        super().__init__(f"[{stage}] page {page_num}: {message}")
        self.stage = stage
        self.page_num = page_num


def now_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000.0


def decode_base64(data: str) -> bytes:
    """
    Decode base64 text.

    Whitespace is ignored and missing trailing padding is restored;
    any other non-alphabet character is an error.

    Raises:
        OCRDecodeError: If the text is not valid base64.
    """
    compact = "".join(data.split())
    remainder = len(compact) % 4
    if remainder == 1:
        raise OCRDecodeError("Invalid base64 length")
    if remainder:
        compact += "=" * (4 - remainder)
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as e:
        raise OCRDecodeError(f"Invalid base64: {e}") from e


def try_decode_base64(data: str) -> Optional[bytes]:
    try:
        return decode_base64(data)
    except OCRDecodeError:
        return None


def decode_image(data: bytes) -> RawImage:
    """
    Decode image bytes (PNG, JPEG, GIF, WEBP, BMP, TIFF) into an RGBA RawImage.

    Only the first frame of multi-frame formats is used.

    Raises:
        OCRDecodeError: If Pillow cannot decode the bytes.
    """
    if not data:
        raise OCRDecodeError("Image payload is empty")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            raw = RawImage.from_pil(img)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise OCRDecodeError(f"Failed to decode image: {e}") from e
    logger.debug("Decoded image: %dx%d", raw.width, raw.height)
    return raw


# One daemon thread per raced call; a hung call never delays the next one
_thread_ids = itertools.count(1)


def run_with_timeout(
    fn: Callable[..., T],
    timeout_ms: float,
    message: str,
    *args,
    **kwargs,
) -> T:
    """
    Run a blocking call on a fresh daemon thread and wait at most ``timeout_ms``.

    On timeout the call is abandoned, not aborted: the thread keeps running
    until ``fn`` returns and its result or exception is dropped. Exceptions
    raised by ``fn`` propagate unchanged.

    Raises:
        OCRTimeoutError: If the deadline passes first.
    """
    future: Future = Future()

    def _call() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)

    threading.Thread(
        target=_call, name=f"local-ocr-{next(_thread_ids)}", daemon=True
    ).start()
    try:
        return future.result(timeout=max(timeout_ms, 0) / 1000.0)
    except FutureTimeoutError:
        future.add_done_callback(_drain)
        raise OCRTimeoutError(message) from None


def _drain(future) -> None:
    # Abandoned calls may still fail after the caller gave up on them.
    if not future.cancelled() and future.exception() is not None:
        logger.debug("Abandoned call finished with error: %s", future.exception())
