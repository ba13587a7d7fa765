#!/usr/bin/env python3
"""
Detection records passed from the inference adapters to the filter.

Boxes follow the Darknet convention: centre x/y and width/height, each
normalised to the frame dimensions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Protocol


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    w: float
    h: float


@dataclass(frozen=True)
class Detection:
    """Single raw detection from the model."""

    class_id: int
    objectness: float
    class_probability: float
    box: BoundingBox


@dataclass(frozen=True)
class FilteredDetection(Detection):
    """A detection that passed both thresholds and maps to a failure label."""

    label: str = ""


class Detector(Protocol):
    def detect(self, frame) -> List[Detection]:
        """Score one frame. Raises InferenceError on a model fault."""
        ...
