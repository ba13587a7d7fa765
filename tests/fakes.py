"""Test doubles for HTTP sessions, detectors and alert channels."""
from __future__ import annotations

import time
from typing import Callable, List, Optional, Sequence

import cv2
import numpy as np

from detections import BoundingBox, Detection
from image_source import Frame


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", json_data=None) -> None:
        self.status_code = status_code
        self.content = content
        self._json = json_data

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


class FakeSession:
    """
    Stands in for requests.Session.

    Either replays `responses` in order (the last one repeats) or asks
    `handler(method, url, kwargs)` for each reply. Exceptions are raised.
    """

    def __init__(self, responses: Optional[Sequence] = None, handler: Optional[Callable] = None) -> None:
        self.responses = list(responses or [FakeResponse()])
        self.handler = handler
        self.calls: List[tuple] = []

    def request(self, method: str, url: str, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.handler is not None:
            result = self.handler(method, url, kwargs)
        elif len(self.responses) > 1:
            result = self.responses.pop(0)
        else:
            result = self.responses[0]
        if isinstance(result, Exception):
            raise result
        return result

    def get(self, url: str, timeout=None, **kwargs):
        return self.request("GET", url, timeout=timeout, **kwargs)


def jpeg_bytes(width: int = 64, height: int = 48) -> bytes:
    image = np.full((height, width, 3), 127, dtype=np.uint8)
    ok, buf = cv2.imencode(".jpg", image)
    assert ok
    return buf.tobytes()


def make_frame(source_index: int = 0, url: str = "http://cam/0.jpg") -> Frame:
    return Frame(
        data=b"",
        source_index=source_index,
        url=url,
        captured_at=time.time(),
        image=np.zeros((48, 64, 3), dtype=np.uint8),
    )


def detection(class_id: int = 0, objectness: float = 0.9, probability: float = 0.9) -> Detection:
    return Detection(
        class_id=class_id,
        objectness=objectness,
        class_probability=probability,
        box=BoundingBox(x=0.5, y=0.5, w=0.2, h=0.2),
    )


class ScriptedDetector:
    """Returns the next scripted result per call; exceptions are raised."""

    def __init__(self, script: Sequence) -> None:
        self.script = list(script)
        self.frames: List[Frame] = []

    def detect(self, frame: Frame):
        self.frames.append(frame)
        result = self.script.pop(0) if self.script else []
        if isinstance(result, Exception):
            raise result
        return result


class RecordingChannel:
    name = "recording"

    def __init__(self, fail_times: int = 0, error: Optional[Exception] = None) -> None:
        self.sent: List[tuple] = []
        self.attempts = 0
        self.fail_times = fail_times
        self.error = error

    def send(self, title, description, color, emoji, image=None) -> None:
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise self.error
        self.sent.append((title, description, color, emoji, image))
