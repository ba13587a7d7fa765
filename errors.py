#!/usr/bin/env python3
"""
Exception types shared across the Print Guardian pipeline.

Fetch and inference errors skip the current tick; transport errors are
logged after retries run out; config errors stop the process at startup.
"""

from typing import Optional


class PrintGuardianError(Exception):
    """Base class for every error raised by the pipeline."""


class FetchError(PrintGuardianError):
    """A camera snapshot could not be fetched or decoded."""

    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    CONNECTION = "connection"
    DECODE = "decode"

    def __init__(self, kind: str, url: str, reason: str = "", status: Optional[int] = None) -> None:
        self.kind = kind
        self.url = url
        self.status = status
        self.reason = reason
        detail = f"HTTP {status}" if status is not None else reason
        super().__init__(f"Failed to fetch image from '{url}' ({kind}): {detail}")


class InferenceError(PrintGuardianError):
    """The detection model could not score a frame."""


class TransportError(PrintGuardianError):
    """An alert or printer-control request failed."""

    def __init__(self, target: str, reason: str, status: Optional[int] = None) -> None:
        self.target = target
        self.reason = reason
        self.status = status
        super().__init__(f"Request to '{target}' failed: {reason}")


class ConfigError(PrintGuardianError):
    """Configuration is missing or invalid."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid configuration for {field}: {reason}")
