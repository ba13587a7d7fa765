#!/usr/bin/env python3
"""
Pause or cancel the print through the Moonraker (Klipper) HTTP API
and read back printer state.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Set, Tuple

import requests

from errors import TransportError
from failure_tracker import FailureEvent
from transport import call_with_retry, make_session, request

logger = logging.getLogger(__name__)

STATUS_QUERY = "/printer/objects/query?webhooks&print_stats"

# print_stats.state values after each action has taken effect
SETTLED_STATES = {
    "pause": {"paused"},
    "cancel": {"cancelled", "standby", "complete", "error"},
}


class MoonrakerClient:
    def __init__(self, api_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or make_session()

    def _post(self, path: str) -> None:
        request(self.session, "POST", f"{self.api_url}{path}", self.timeout)

    def pause_print(self) -> None:
        self._post("/printer/print/pause")

    def cancel_print(self) -> None:
        self._post("/printer/print/cancel")

    def get_printer_status(self) -> dict:
        response = request(self.session, "GET", f"{self.api_url}{STATUS_QUERY}", self.timeout)
        try:
            return response.json()
        except ValueError:
            raise TransportError(self.api_url + STATUS_QUERY, "response was not JSON")

    def print_state(self) -> Optional[str]:
        """print_stats.state (e.g. 'printing', 'paused'), or None if unreported."""
        status = self.get_printer_status()
        return status.get("result", {}).get("status", {}).get("print_stats", {}).get("state")


class PrinterActionClient:
    """
    Apply the configured action once per failure episode.

    Calling pause_or_cancel twice for the same (source, episode) is a no-op,
    as is calling it while the printer already reports the target state.
    """

    def __init__(
        self,
        client: MoonrakerClient,
        action: str = "pause",
        retries: int = 3,
        backoff: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if action not in ("pause", "cancel", "none"):
            raise ValueError(f"unknown printer action {action!r}")
        self.client = client
        self.action = action
        self.retries = retries
        self.backoff = backoff
        self.sleep = sleep
        self._handled: Set[Tuple[int, int]] = set()
        self.last_status: Optional[dict] = None

    @property
    def enabled(self) -> bool:
        return self.action != "none"

    def is_handled(self, source_index: int, episode: int) -> bool:
        return (source_index, episode) in self._handled

    def pause_or_cancel(self, event: FailureEvent) -> bool:
        """
        Returns True if a command was sent, False if nothing needed doing.

        Raises:
            TransportError: the controller stayed unreachable through every retry.
        """
        if not self.enabled:
            return False

        key = (event.source_index, event.episode)
        if key in self._handled:
            logger.info("Printer %s already issued for camera %d episode %d", self.action, event.source_index, event.episode)
            return False

        state = self._current_state()
        if state in SETTLED_STATES[self.action]:
            logger.info("Printer already in state '%s'; not sending %s", state, self.action)
            self._handled.add(key)
            return False

        command = self.client.pause_print if self.action == "pause" else self.client.cancel_print
        call_with_retry(
            f"printer {self.action}",
            command,
            attempts=self.retries,
            backoff=self.backoff,
            sleep=self.sleep,
        )
        self._handled.add(key)
        logger.info("Printer %s sent for camera %d episode %d", self.action, event.source_index, event.episode)

        try:
            self.last_status = self.client.get_printer_status()
        except TransportError as e:
            logger.warning("Could not read printer status after %s: %s", self.action, e)
            self.last_status = None
        return True

    def _current_state(self) -> Optional[str]:
        try:
            return self.client.print_state()
        except TransportError as e:
            logger.warning("Printer status unavailable before %s: %s", self.action, e)
            return None
