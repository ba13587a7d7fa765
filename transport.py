#!/usr/bin/env python3
"""
Shared HTTP plumbing: one requests session per collaborator and a bounded
retry loop with exponential backoff for alert and printer-control calls.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, TypeVar

import requests

from errors import TransportError

logger = logging.getLogger(__name__)

USER_AGENT = "print-guardian/1.0"

T = TypeVar("T")


def make_session() -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    return session


def backoff_delays(attempts: int, base: float) -> List[float]:
    """Delays slept between attempts: base, 2*base, 4*base, ... (attempts - 1 entries)."""
    return [base * (2 ** i) for i in range(max(0, attempts - 1))]


def call_with_retry(
    what: str,
    fn: Callable[[], T],
    attempts: int,
    backoff: float,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn until it returns, retrying TransportError up to `attempts` times.

    The last TransportError is re-raised once attempts are exhausted.
    """
    delays = backoff_delays(attempts, backoff)
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except TransportError as e:
            if attempt >= attempts:
                logger.error("%s failed after %d attempt(s): %s", what, attempt, e)
                raise
            wait_s = delays[attempt - 1]
            logger.warning("%s failed (attempt %d/%d): %s; retrying in %.1fs", what, attempt, attempts, e, wait_s)
            sleep(wait_s)


def check_response(target: str, response: requests.Response) -> requests.Response:
    if not 200 <= response.status_code < 300:
        raise TransportError(target, f"HTTP {response.status_code}", status=response.status_code)
    return response


def request(session: requests.Session, method: str, url: str, timeout: float, **kwargs) -> requests.Response:
    """Issue one request, mapping requests exceptions and non-2xx replies to TransportError."""
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
    except requests.Timeout:
        raise TransportError(url, f"timed out after {timeout}s")
    except requests.RequestException as e:
        raise TransportError(url, str(e))
    return check_response(url, response)
