#!/usr/bin/env python3
"""
Image helpers: decode snapshots, flip them and draw detection boxes for alerts.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import cv2
import numpy as np

logger = logging.getLogger(__name__)

BOX_COLOR_BGR = (0, 255, 255)  # yellow
BOX_THICKNESS = 3


def decode_jpeg_to_bgr(jpeg_bytes: bytes) -> Optional[np.ndarray]:
    """Decode JPEG/PNG bytes to a BGR array, or None if the payload is not an image."""
    if not jpeg_bytes:
        return None
    try:
        arr = np.frombuffer(jpeg_bytes, dtype=np.uint8)
        return cv2.imdecode(arr, cv2.IMREAD_COLOR)
    except cv2.error as e:
        logger.debug("imdecode failed: %s", e)
        return None


def flip_vertical(frame_bgr: np.ndarray) -> np.ndarray:
    return cv2.flip(frame_bgr, 0)


def encode_jpeg(frame_bgr: np.ndarray, quality: int = 90) -> Optional[bytes]:
    ok, buf = cv2.imencode(".jpg", frame_bgr, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        return None
    return buf.tobytes()


def annotate_detections(frame_bgr: np.ndarray, detections: Sequence) -> np.ndarray:
    """
    Draw a labelled box for each detection on a copy of the frame.

    Boxes are Darknet-style normalised centre/size and are converted to
    pixel corners clamped to the frame.
    """
    annotated = frame_bgr.copy()
    height, width = annotated.shape[:2]
    for det in detections:
        box = det.box
        cx, cy = box.x * width, box.y * height
        w, h = box.w * width, box.h * height
        x1 = int(max(0.0, cx - w / 2.0))
        y1 = int(max(0.0, cy - h / 2.0))
        x2 = int(min(width - 1, cx + w / 2.0))
        y2 = int(min(height - 1, cy + h / 2.0))
        cv2.rectangle(annotated, (x1, y1), (x2, y2), BOX_COLOR_BGR, BOX_THICKNESS)

        label = getattr(det, "label", str(det.class_id))
        caption = f"{label} {det.class_probability * 100:.0f}%"
        cv2.putText(
            annotated,
            caption,
            (x1, max(12, y1 - 6)),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.5,
            BOX_COLOR_BGR,
            1,
        )
    return annotated


def annotated_jpeg(frame_bgr: np.ndarray, detections: Sequence) -> Optional[bytes]:
    """Annotate and JPEG-encode in one step; None if encoding fails."""
    try:
        return encode_jpeg(annotate_detections(frame_bgr, detections))
    except cv2.error as e:
        logger.warning("Failed to annotate frame: %s", e)
        return None
