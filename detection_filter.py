#!/usr/bin/env python3
"""
Threshold filter that narrows raw detections to confident failure detections.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Sequence

from detections import Detection, FilteredDetection
from errors import ConfigError


def load_labels(path: str) -> Dict[int, str]:
    """Read one label per line; the line index is the class id. Blank lines are unmapped."""
    try:
        with open(path, 'r') as f:
            lines = f.read().splitlines()
    except OSError as e:
        raise ConfigError("LABEL_FILE", f"cannot read {path}: {e}")
    return {i: line.strip() for i, line in enumerate(lines) if line.strip()}


def max_probability(detections: Iterable[Detection]) -> float:
    return max((d.class_probability for d in detections), default=0.0)


class DetectionFilter:
    """
    Keep detections with objectness >= objectness_threshold and
    class_probability >= class_prob_threshold whose class id has a label.

    Comparisons are inclusive so a score exactly at the threshold passes.
    Class ids the label map does not know are dropped without error.
    """

    def __init__(self, objectness_threshold: float, class_prob_threshold: float, labels: Mapping[int, str]) -> None:
        self.objectness_threshold = objectness_threshold
        self.class_prob_threshold = class_prob_threshold
        self.labels = dict(labels)

    def filter(self, detections: Sequence[Detection]) -> List[FilteredDetection]:
        kept: List[FilteredDetection] = []
        for det in detections:
            if det.objectness < self.objectness_threshold:
                continue
            if det.class_probability < self.class_prob_threshold:
                continue
            label = self.labels.get(det.class_id)
            if not label:
                continue
            kept.append(
                FilteredDetection(
                    class_id=det.class_id,
                    objectness=det.objectness,
                    class_probability=det.class_probability,
                    box=det.box,
                    label=label,
                )
            )
        return kept
