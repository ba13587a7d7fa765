#!/usr/bin/env python3
"""
Darknet (YOLO) failure detector for Print Guardian.

Runs the network through OpenCV's DNN module on the CPU:
- Lazy network loading (first detect() call)
- One forward pass over every YOLO output layer
- Non-maximum suppression, best class per surviving box
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional, Sequence

import cv2
import numpy as np
import requests

from detections import BoundingBox, Detection
from errors import InferenceError, TransportError
from frame_utils import decode_jpeg_to_bgr
from transport import check_response, make_session

logger = logging.getLogger(__name__)

INPUT_SIZE = 416
CANDIDATE_FLOOR = 0.01  # rows below this objectness never reach NMS
NMS_THRESHOLD = 0.45
DOWNLOAD_CHUNK = 1 << 20


def ensure_weights_downloaded(
    weights_path: str,
    download_url: str,
    timeout: float = 60.0,
    session: Optional[requests.Session] = None,
) -> None:
    """Download the weights file if it is not already on disk."""
    if os.path.exists(weights_path):
        return

    logger.info("Model weights not found, downloading from: %s", download_url)
    session = session or make_session()
    directory = os.path.dirname(weights_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    partial_path = weights_path + ".part"
    try:
        with session.get(download_url, stream=True, timeout=timeout) as response:
            check_response(download_url, response)
            with open(partial_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK):
                    if chunk:
                        f.write(chunk)
    except (requests.RequestException, TransportError) as e:
        if os.path.exists(partial_path):
            os.unlink(partial_path)
        if isinstance(e, TransportError):
            raise
        raise TransportError(download_url, str(e))

    os.replace(partial_path, weights_path)
    logger.info("Model weights downloaded successfully")


class DarknetDetector:
    """Lazy-loaded Darknet network behind the detect(frame) interface."""

    def __init__(
        self,
        model_cfg: str,
        weights_path: str,
        input_size: int = INPUT_SIZE,
        candidate_floor: float = CANDIDATE_FLOOR,
        nms_threshold: float = NMS_THRESHOLD,
    ) -> None:
        self.model_cfg = model_cfg
        self.weights_path = weights_path
        self.input_size = input_size
        self.candidate_floor = candidate_floor
        self.nms_threshold = nms_threshold
        self._net = None
        self._output_names: Sequence[str] = ()

    def _load(self) -> None:
        if self._net is not None:
            return

        for path in (self.model_cfg, self.weights_path):
            if not os.path.exists(path):
                raise InferenceError(f"Model file not found: {path}")

        logger.info("Loading Darknet network from %s", self.model_cfg)
        try:
            net = cv2.dnn.readNetFromDarknet(self.model_cfg, self.weights_path)
        except cv2.error as e:
            raise InferenceError(f"Failed to load network from '{self.model_cfg}': {e}")
        net.setPreferableBackend(cv2.dnn.DNN_BACKEND_OPENCV)
        net.setPreferableTarget(cv2.dnn.DNN_TARGET_CPU)

        self._output_names = net.getUnconnectedOutLayersNames()
        self._net = net
        logger.info("Darknet network loaded (%d output layers)", len(self._output_names))

    def detect(self, frame) -> List[Detection]:
        """Run the network on a frame; returns every box that survives NMS."""
        self._load()

        image = getattr(frame, "image", None)
        if image is None:
            image = decode_jpeg_to_bgr(frame.data)
        if image is None:
            raise InferenceError("Frame does not contain a decodable image")

        try:
            blob = cv2.dnn.blobFromImage(
                image, 1 / 255.0, (self.input_size, self.input_size), swapRB=True, crop=False
            )
            self._net.setInput(blob)
            outputs = self._net.forward(self._output_names)
        except cv2.error as e:
            raise InferenceError(f"Neural network inference failed: {e}")

        return self.parse_outputs(outputs)

    def parse_outputs(self, outputs: Sequence[np.ndarray]) -> List[Detection]:
        """
        Convert YOLO output rows into Detections.

        Each row is [cx, cy, w, h, objectness, class scores...], all normalised.
        """
        if not outputs:
            return []
        rows = np.concatenate([np.asarray(o).reshape(-1, np.asarray(o).shape[-1]) for o in outputs])
        if rows.shape[1] < 6:
            raise InferenceError(f"Unexpected output row width {rows.shape[1]}")

        rows = rows[rows[:, 4] >= self.candidate_floor]
        if rows.size == 0:
            return []

        scores = rows[:, 5:]
        class_ids = np.argmax(scores, axis=1)
        probs = scores[np.arange(len(rows)), class_ids]

        nms_boxes = [
            [float(r[0] - r[2] / 2.0), float(r[1] - r[3] / 2.0), float(r[2]), float(r[3])]
            for r in rows
        ]
        # per-class suppression
        keep = cv2.dnn.NMSBoxesBatched(
            nms_boxes, probs.astype(float).tolist(), class_ids.astype(int).tolist(), 0.0, self.nms_threshold
        )

        detections: List[Detection] = []
        for i in np.array(keep).flatten():
            r = rows[i]
            detections.append(
                Detection(
                    class_id=int(class_ids[i]),
                    objectness=float(r[4]),
                    class_probability=float(probs[i]),
                    box=BoundingBox(x=float(r[0]), y=float(r[1]), w=float(r[2]), h=float(r[3])),
                )
            )
        return detections
