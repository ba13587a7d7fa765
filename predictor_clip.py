#!/usr/bin/env python3
"""
CLIP-based failed-print detector for Print Guardian - CPU only

Alternative to the Darknet detector for cameras where a whole-frame
classifier works better than box detection. The fine-tuned classifier head
sits on top of CLIP ViT-B/32 image features:
- CPU-only inference with float32
- Lazy model loading
- Output reported as one whole-frame detection so the same filter and
  consolidation logic applies
"""

from __future__ import annotations

import logging
import os
import time
from typing import List, Optional

import cv2
import numpy as np
import torch
import torch.nn as nn

from detections import BoundingBox, Detection
from errors import InferenceError

logger = logging.getLogger(__name__)

torch.set_grad_enabled(False)

_DEVICE = torch.device("cpu")

FAILED_CLASS_ID = 1
WHOLE_FRAME = BoundingBox(x=0.5, y=0.5, w=1.0, h=1.0)
LOAD_RETRIES = 3


class PrintClassifier(nn.Module):
    """Classifier head matching the training architecture."""
    def __init__(self):
        super().__init__()
        self.classifier = nn.Sequential(
            nn.Dropout(0.3),
            nn.Linear(512, 256),
            nn.ReLU(),
            nn.Dropout(0.3),
            nn.Linear(256, 2)
        )

    def forward(self, features: torch.Tensor) -> torch.Tensor:
        return self.classifier(features)


class ClipDetector:
    """Lazy-loaded CLIP classifier behind the detect(frame) interface."""

    def __init__(self, classifier_path: str, cache_dir: Optional[str] = None, threads: int = 4) -> None:
        self.classifier_path = classifier_path
        self.cache_dir = cache_dir or os.path.join(os.path.dirname(os.path.abspath(classifier_path)), ".clip_cache")
        self.threads = threads
        self.clip_model = None
        self.preprocess = None
        self.classifier: Optional[PrintClassifier] = None
        self._loaded = False

    def _load(self) -> None:
        if self._loaded:
            return

        logger.info("Loading CLIP model (this may take a moment)...")
        torch.set_num_threads(self.threads)

        try:
            import clip
        except ImportError:
            raise InferenceError("CLIP backend requires the 'clip' extra: pip install print-guardian[clip]")

        if not os.path.exists(self.classifier_path):
            raise InferenceError(f"Model not found: {self.classifier_path}")

        os.makedirs(self.cache_dir, exist_ok=True)
        local_model_path = os.path.join(self.cache_dir, "ViT-B-32.pt")

        if os.path.exists(local_model_path):
            logger.info("Loading CLIP from local cache: %s", local_model_path)
            self.clip_model, self.preprocess = clip.load(local_model_path, device=_DEVICE, jit=False)
        else:
            logger.warning("CLIP model not found at %s, downloading...", local_model_path)
            for attempt in range(LOAD_RETRIES):
                try:
                    self.clip_model, self.preprocess = clip.load(
                        "ViT-B/32", device=_DEVICE, jit=False, download_root=self.cache_dir
                    )
                    break
                except Exception as e:
                    if attempt < LOAD_RETRIES - 1:
                        wait_time = 10 * (attempt + 1)
                        logger.warning("CLIP load failed (attempt %d), retrying in %ds: %s", attempt + 1, wait_time, e)
                        time.sleep(wait_time)
                    else:
                        raise InferenceError(f"Failed to load CLIP after {LOAD_RETRIES} attempts: {e}")

        self.clip_model.eval()

        checkpoint = torch.load(self.classifier_path, map_location=_DEVICE)
        state_dict = checkpoint.get("model_state_dict", checkpoint)
        classifier_state = {k: v for k, v in state_dict.items() if k.startswith("classifier.")}

        self.classifier = PrintClassifier()
        self.classifier.load_state_dict(classifier_state)
        self.classifier.eval()
        self.classifier.to(_DEVICE)

        self._loaded = True
        logger.info("CLIP model loaded successfully")

    def failed_probability(self, frame_bgr: np.ndarray) -> float:
        """Probability (0.0 to 1.0) that the frame shows a failed print."""
        self._load()

        from PIL import Image

        frame_rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        pil_image = Image.fromarray(frame_rgb)
        image_tensor = self.preprocess(pil_image).unsqueeze(0).to(_DEVICE)

        with torch.no_grad():
            features = self.clip_model.encode_image(image_tensor).float()
            logits = self.classifier(features)
            probs = torch.softmax(logits, dim=-1)

        # Class 0 = success, Class 1 = failed
        return float(probs[0, FAILED_CLASS_ID].item())

    def detect(self, frame) -> List[Detection]:
        try:
            failed_prob = self.failed_probability(frame.image)
        except InferenceError:
            raise
        except (RuntimeError, ValueError, cv2.error) as e:
            raise InferenceError(f"CLIP inference failed: {e}")

        return [
            Detection(
                class_id=FAILED_CLASS_ID,
                objectness=1.0,
                class_probability=failed_prob,
                box=WHOLE_FRAME,
            )
        ]
