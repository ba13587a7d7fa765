#!/usr/bin/env python3
"""
Round-robin snapshot fetcher for one or more camera endpoints.

Each call to next() polls exactly one source. The cursor moves on whether
or not the fetch succeeds, so an unreachable camera never starves the others.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import requests

from errors import FetchError
from frame_utils import decode_jpeg_to_bgr, flip_vertical
from transport import make_session

logger = logging.getLogger(__name__)

OFFLINE = "offline"
RECOVERY = "recovery"


@dataclass
class Frame:
    data: bytes
    source_index: int
    url: str
    captured_at: float
    image: np.ndarray


class ImageSourceCycler:
    """Fetch frames from image URLs in strict rotation."""

    def __init__(
        self,
        urls: Sequence[str],
        timeout: float = 10.0,
        flip_image: bool = False,
        max_failures: int = 15,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not urls:
            raise ValueError("ImageSourceCycler needs at least one URL")
        self.urls: Tuple[str, ...] = tuple(urls)
        self.timeout = timeout
        self.flip_image = flip_image
        self.max_failures = max_failures
        self.session = session or make_session()
        self._cursor = 0
        self._failures: Dict[int, int] = {i: 0 for i in range(len(self.urls))}
        self._offline: Dict[int, bool] = {i: False for i in range(len(self.urls))}
        self._status_changes: List[Tuple[str, int, str]] = []

    def __len__(self) -> int:
        return len(self.urls)

    def next(self) -> Frame:
        """
        Fetch one frame from the current source and advance the cursor.

        Raises:
            FetchError: timeout, connection failure, non-2xx status or a
                payload that does not decode as an image.
        """
        index = self._cursor
        url = self.urls[index]
        self._cursor = (self._cursor + 1) % len(self.urls)

        try:
            frame = self._fetch(index, url)
        except FetchError as e:
            self._record_failure(index, url, e)
            raise
        self._record_success(index, url)
        return frame

    def take_status_changes(self) -> List[Tuple[str, int, str]]:
        """Return and clear pending (offline|recovery, index, url) notices."""
        changes = self._status_changes
        self._status_changes = []
        return changes

    def failure_count(self, index: int) -> int:
        return self._failures[index]

    def is_offline(self, index: int) -> bool:
        return self._offline[index]

    def _fetch(self, index: int, url: str) -> Frame:
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.Timeout:
            raise FetchError(FetchError.TIMEOUT, url, f"no response within {self.timeout}s")
        except requests.RequestException as e:
            raise FetchError(FetchError.CONNECTION, url, str(e))

        if not 200 <= response.status_code < 300:
            raise FetchError(FetchError.HTTP_STATUS, url, status=response.status_code)

        data = response.content
        image = decode_jpeg_to_bgr(data)
        if image is None:
            raise FetchError(FetchError.DECODE, url, f"{len(data)} bytes did not decode as an image")
        if self.flip_image:
            image = flip_vertical(image)

        return Frame(data=data, source_index=index, url=url, captured_at=time.time(), image=image)

    def _record_failure(self, index: int, url: str, error: FetchError) -> None:
        self._failures[index] += 1
        logger.warning("Source %d: %s (consecutive failures: %d)", index, error, self._failures[index])
        if self._failures[index] >= self.max_failures and not self._offline[index]:
            self._offline[index] = True
            self._status_changes.append((OFFLINE, index, url))

    def _record_success(self, index: int, url: str) -> None:
        if self._offline[index]:
            self._offline[index] = False
            self._status_changes.append((RECOVERY, index, url))
        self._failures[index] = 0
