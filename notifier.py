#!/usr/bin/env python3
"""
Alert delivery for Print Guardian

Sends rich Discord webhook embeds (with the annotated snapshot attached when
available) and, optionally, the same alert to Telegram chats via the Bot API.
Every channel is retried a bounded number of times with backoff; a delivery
failure is reported to the caller but never undoes a detected failure.
"""

from __future__ import annotations

import html
import io
import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

import requests

from errors import TransportError
from failure_tracker import FailureEvent
from transport import call_with_retry, make_session, request

logger = logging.getLogger(__name__)

FOOTER_TEXT = "Print Guardian"

COLOR_FAILURE = 0xFFA500  # orange
COLOR_CRITICAL = 0xFF0000  # red
COLOR_INFO = 0x0099FF  # blue
COLOR_RECOVERY = 0x00FF00  # green


class DiscordWebhookChannel:
    """Discord webhook: JSON embed, or multipart with the image attached."""

    name = "discord"

    def __init__(self, webhook_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.session = session or make_session()

    def build_embed(self, title: str, description: str, color: int, emoji: str, filename: Optional[str] = None) -> dict:
        embed = {
            "title": f"{emoji} {title}",
            "description": description,
            "color": color,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "footer": {"text": FOOTER_TEXT},
        }
        if filename:
            embed["image"] = {"url": f"attachment://{filename}"}
        return {"embeds": [embed]}

    def send(self, title: str, description: str, color: int, emoji: str, image: Optional[bytes] = None) -> None:
        if image is None:
            payload = self.build_embed(title, description, color, emoji)
            request(self.session, "POST", self.webhook_url, self.timeout, json=payload)
            return

        filename = f"failure_detection_{int(time.time())}.jpg"
        payload = self.build_embed(title, description, color, emoji, filename=filename)
        files = {"files[0]": (filename, io.BytesIO(image), "image/jpeg")}
        request(
            self.session,
            "POST",
            self.webhook_url,
            self.timeout,
            data={"payload_json": json.dumps(payload)},
            files=files,
        )


class TelegramChannel:
    """Telegram Bot API for one chat: sendMessage, or sendPhoto with the alert as caption."""

    API_BASE = "https://api.telegram.org"
    CAPTION_LIMIT = 1024

    def __init__(
        self,
        bot_token: str,
        chat_id: int,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.name = f"telegram:{chat_id}"
        self.timeout = timeout
        self.session = session or make_session()

    def _url(self, method: str) -> str:
        return f"{self.API_BASE}/bot{self.bot_token}/{method}"

    @staticmethod
    def format_html(title: str, description: str, emoji: str) -> str:
        body = html.escape(description)
        body = re.sub(r"\*\*(.+?)\*\*", r"<b>\1</b>", body)
        return f"<b>{emoji} {html.escape(title)}</b>\n{body}"

    def _check(self, method: str, response: requests.Response) -> None:
        try:
            result = response.json()
        except ValueError:
            raise TransportError(f"telegram:{method}", "response was not JSON")
        if not result.get('ok'):
            raise TransportError(f"telegram:{method}", result.get('description', 'Unknown error'))

    def send(self, title: str, description: str, color: int, emoji: str, image: Optional[bytes] = None) -> None:
        if image is None:
            text = self.format_html(title, description, emoji)
            payload = {'chat_id': self.chat_id, 'text': text, 'parse_mode': 'HTML'}
            response = request(self.session, "POST", self._url("sendMessage"), self.timeout, json=payload)
            self._check("sendMessage", response)
        else:
            caption = self.format_html(title, self.shorten(title, description, emoji), emoji)
            files = {'photo': ('photo.jpg', io.BytesIO(image), 'image/jpeg')}
            data = {'chat_id': self.chat_id, 'caption': caption, 'parse_mode': 'HTML'}
            response = request(self.session, "POST", self._url("sendPhoto"), self.timeout, data=data, files=files)
            self._check("sendPhoto", response)

    @classmethod
    def shorten(cls, title: str, description: str, emoji: str) -> str:
        # Cut the plain text so markup added by format_html is never split.
        budget = cls.CAPTION_LIMIT - len(f"{emoji} {title}\n")
        if len(description) <= budget:
            return description
        return description[:max(0, budget - 1)] + "…"


def describe_failure(event: FailureEvent) -> str:
    description = (
        f"Detected **{event.label}** print failure with **{event.confidence * 100:.2f}%** confidence"
        f" on camera {event.source_index + 1}"
    )
    best = event.best
    if best is not None:
        box = best.box
        description += (
            f"\n\n**Location:**\n• X: {box.x:.3f}\n• Y: {box.y:.3f}"
            f"\n• Width: {box.w:.3f}\n• Height: {box.h:.3f}"
        )
    if len(event.detections) > 1:
        description += f"\n\n{len(event.detections)} failure regions detected in this frame."
    return description


def describe_printer_status(status: Optional[dict]) -> str:
    if not status:
        return ""
    stats = status.get("result", {}).get("status", {}).get("print_stats", {})
    duration = float(stats.get("print_duration") or 0.0)
    hours, rem = divmod(int(duration), 3600)
    minutes, seconds = divmod(rem, 60)
    filament_m = float(stats.get("filament_used") or 0.0) / 1000.0
    return (
        f"\n\nCurrent file: **{stats.get('filename') or 'Unknown'}**"
        f"\nCurrent printer state: **{stats.get('state') or 'unknown'}**"
        f"\n**Print Stats:**\n• Filament Used: {filament_m:.2f}m"
        f"\n• Print Duration: {hours}h {minutes}m {seconds}s"
    )


class AlertDispatcher:
    """Formats alerts and fans them out to every configured channel."""

    def __init__(
        self,
        channels: Sequence,
        retries: int = 3,
        backoff: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.channels = list(channels)
        self.retries = retries
        self.backoff = backoff
        self.sleep = sleep

    def notify(self, event: FailureEvent) -> None:
        """Send a failure (or reminder) alert. Raises TransportError if any channel gave up."""
        if event.reminder:
            title = "Print Failure Still Detected"
        else:
            title = "Print Failure Detected"
        self._dispatch(title, describe_failure(event), COLOR_FAILURE, "⚠️", event.annotated_image)

    def send_print_action_alert(self, event: FailureEvent, action: str, status: Optional[dict] = None) -> None:
        verb = "paused" if action == "pause" else "cancelled"
        description = (
            f"Print has been {verb} after detecting **{event.label}** on camera {event.source_index + 1}."
            " Please check the printer."
        )
        description += describe_printer_status(status)
        self._dispatch(f"Print {verb.capitalize()} Due to Failure", description, COLOR_CRITICAL, "🚨", event.annotated_image)

    def send_system_offline_alert(self, image_url: str, attempts: int) -> None:
        description = (
            f"Failed to fetch image from {image_url} after {attempts} attempts. Print monitoring is offline!"
        )
        self._dispatch("CRITICAL: Print Monitoring Offline", description, COLOR_CRITICAL, "🚨")

    def send_system_recovery_alert(self, image_url: str) -> None:
        self._dispatch(
            "RECOVERY: Print Monitoring Back Online",
            f"Image fetch from {image_url} successful after connection issues.",
            COLOR_RECOVERY,
            "✅",
        )

    def _dispatch(self, title: str, description: str, color: int, emoji: str, image: Optional[bytes] = None) -> None:
        failed: List[str] = []
        for channel in self.channels:
            try:
                call_with_retry(
                    f"{channel.name} alert",
                    lambda: channel.send(title, description, color, emoji, image),
                    attempts=self.retries,
                    backoff=self.backoff,
                    sleep=self.sleep,
                )
                logger.info("✓ Sent '%s' via %s", title, channel.name)
            except TransportError as e:
                logger.error("✗ Giving up on '%s' via %s: %s", title, channel.name, e)
                failed.append(channel.name)
        if failed:
            raise TransportError(", ".join(failed), f"alert '{title}' was not delivered")
