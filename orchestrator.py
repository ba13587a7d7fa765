#!/usr/bin/env python3
"""
Print Guardian orchestrator: camera polling + detection + alerts + auto-pause

Behavior:
- Every CHECK_INTERVAL seconds, fetch one snapshot, cycling through the
  configured cameras (with N cameras each one is sampled every N intervals).
- Run the detector on it and keep only confident failure detections.
- Fold the verdict into that camera's failure state; a failure is raised only
  after CONFIRMATION_COUNT consecutive hits.
- On raise: send the alert (annotated snapshot attached) and pause or cancel
  the print. While the failure persists, re-alert after ALERT_COOLDOWN and
  keep retrying the printer action until it goes through once.
- Send offline / recovery alerts when a camera stops or resumes answering.
- Write a readiness marker after the first successful pass; stop cleanly on
  SIGINT/SIGTERM after the current tick.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
import time
from typing import List, Optional

from detection_filter import DetectionFilter, load_labels, max_probability
from detections import Detector, FilteredDetection
from errors import ConfigError, FetchError, InferenceError, TransportError
from failure_tracker import FailureEvent, FailureTracker, Phase, Transition, build_event
from frame_utils import annotated_jpeg
from image_source import OFFLINE, Frame, ImageSourceCycler
from notifier import AlertDispatcher, DiscordWebhookChannel, TelegramChannel
from predictor_darknet import DarknetDetector, ensure_weights_downloaded
from printer_moonraker import MoonrakerClient, PrinterActionClient
from settings import Settings, load_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


class PrintGuardian:
    """The tick-driven detection-to-decision loop."""

    def __init__(
        self,
        cycler: ImageSourceCycler,
        detector: Detector,
        detection_filter: DetectionFilter,
        tracker: FailureTracker,
        dispatcher: AlertDispatcher,
        printer: Optional[PrinterActionClient] = None,
        check_interval: float = 10.0,
        ready_file: Optional[str] = None,
        output_dir: Optional[str] = None,
    ) -> None:
        self.cycler = cycler
        self.detector = detector
        self.detection_filter = detection_filter
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.printer = printer
        self.check_interval = check_interval
        self.ready_file = ready_file
        self.output_dir = output_dir
        self.ready = False

    def tick(self) -> Optional[Transition]:
        """
        Poll one source and process its frame.

        Returns the source's transition, or None when the tick produced no
        evidence (fetch or inference error). Errors never touch tracker state.
        """
        try:
            frame = self.cycler.next()
        except FetchError:
            self._send_status_changes()
            return None
        self._send_status_changes()

        try:
            detections = self.detector.detect(frame)
        except InferenceError as e:
            logger.error("Camera %d: inference failed: %s", frame.source_index + 1, e)
            return None

        filtered = self.detection_filter.filter(detections)
        logger.debug(
            "Camera %d: %d raw detection(s), max probability %.2f%%, %d above thresholds",
            frame.source_index + 1, len(detections), max_probability(detections) * 100, len(filtered),
        )

        transition = self.tracker.update(frame.source_index, bool(filtered))
        self._mark_ready()

        if transition in (Transition.RAISE, Transition.REMIND):
            self._handle_failure(frame, filtered, transition)
        elif transition is Transition.CLEAR:
            logger.info("Camera %d: failure evidence has lapsed; episode cleared", frame.source_index + 1)
        elif filtered:
            st = self.tracker.state(frame.source_index)
            logger.info(
                "Camera %d: %s detected (%.2f%%), state %s",
                frame.source_index + 1, filtered[0].label, filtered[0].class_probability * 100, st.phase.value,
            )
            if st.phase is Phase.CONFIRMED and self._printer_pending(frame.source_index, st.episode):
                event = build_event(
                    frame.source_index,
                    filtered,
                    episode=st.episode,
                    timestamp=frame.captured_at,
                    source_url=frame.url,
                    annotated_image=annotated_jpeg(frame.image, filtered),
                )
                self._apply_printer_action(event)
        else:
            logger.info("Camera %d: no significant print failure detected", frame.source_index + 1)
        return transition

    def run(self, stop_event: threading.Event) -> None:
        """Tick on a fixed interval until stop_event is set. Ticks never overlap."""
        logger.info(
            "Monitoring %d camera(s) every %.1fs (each camera every %.1fs)",
            len(self.cycler), self.check_interval, self.check_interval * len(self.cycler),
        )
        try:
            while not stop_event.is_set():
                started = time.monotonic()
                try:
                    self.tick()
                except Exception:
                    logger.exception("Unexpected error during tick; continuing")
                elapsed = time.monotonic() - started
                stop_event.wait(max(0.0, self.check_interval - elapsed))
        finally:
            self._clear_ready()
            logger.info("Monitoring stopped")

    def _handle_failure(self, frame: Frame, filtered: List[FilteredDetection], transition: Transition) -> None:
        st = self.tracker.state(frame.source_index)
        image = annotated_jpeg(frame.image, filtered)
        event = build_event(
            frame.source_index,
            filtered,
            episode=st.episode,
            timestamp=frame.captured_at,
            source_url=frame.url,
            reminder=transition is Transition.REMIND,
            annotated_image=image,
        )

        if transition is Transition.RAISE:
            logger.warning(
                "Camera %d: print failure confirmed (%s, %.2f%%); episode %d",
                frame.source_index + 1, event.label, event.confidence * 100, event.episode,
            )
            self._save_snapshot(event.source_index, event.timestamp, image)
        else:
            logger.warning("Camera %d: failure still present; sending reminder", frame.source_index + 1)

        try:
            self.dispatcher.notify(event)
        except TransportError as e:
            logger.error("Failure alert not delivered: %s", e)

        if self._printer_pending(event.source_index, event.episode):
            self._apply_printer_action(event)

    def _printer_pending(self, source_index: int, episode: int) -> bool:
        """True while this episode's printer action has not gone through yet."""
        if self.printer is None or not self.printer.enabled:
            return False
        return not self.printer.is_handled(source_index, episode)

    def _apply_printer_action(self, event: FailureEvent) -> None:
        try:
            acted = self.printer.pause_or_cancel(event)
        except TransportError as e:
            logger.error("Printer %s failed: %s", self.printer.action, e)
            return
        if acted:
            try:
                self.dispatcher.send_print_action_alert(event, self.printer.action, self.printer.last_status)
            except TransportError as e:
                logger.error("Print %s alert not delivered: %s", self.printer.action, e)

    def _send_status_changes(self) -> None:
        for kind, index, url in self.cycler.take_status_changes():
            try:
                if kind == OFFLINE:
                    logger.error("Camera %d is offline: %s", index + 1, url)
                    self.dispatcher.send_system_offline_alert(url, self.cycler.max_failures)
                else:
                    logger.info("Camera %d is back online: %s", index + 1, url)
                    self.dispatcher.send_system_recovery_alert(url)
            except TransportError as e:
                logger.error("Camera %s alert not delivered: %s", kind, e)

    def _save_snapshot(self, source_index: int, timestamp: float, image: Optional[bytes]) -> None:
        if not self.output_dir or image is None:
            return
        try:
            os.makedirs(self.output_dir, exist_ok=True)
            stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(timestamp))
            path = os.path.join(self.output_dir, f"failure_cam{source_index + 1}_{stamp}.jpg")
            with open(path, 'wb') as f:
                f.write(image)
            logger.info("Saved failure snapshot to %s", path)
        except OSError as e:
            logger.warning("Could not save failure snapshot: %s", e)

    def _mark_ready(self) -> None:
        if self.ready:
            return
        self.ready = True
        if self.ready_file:
            try:
                with open(self.ready_file, 'w') as f:
                    f.write(f"{time.time():.0f}\n")
                logger.info("First pipeline pass complete; wrote %s", self.ready_file)
            except OSError as e:
                logger.warning("Could not write readiness marker %s: %s", self.ready_file, e)

    def _clear_ready(self) -> None:
        if self.ready_file and os.path.exists(self.ready_file):
            try:
                os.unlink(self.ready_file)
            except OSError as e:
                logger.warning("Could not remove readiness marker %s: %s", self.ready_file, e)
        self.ready = False


def build_detector(settings: Settings):
    if settings.detector_backend == "clip":
        from predictor_clip import ClipDetector
        return ClipDetector(settings.weights_file)
    ensure_weights_downloaded(settings.weights_file, settings.model_weights_url)
    return DarknetDetector(settings.model_cfg, settings.weights_file)


def build_dispatcher(settings: Settings) -> AlertDispatcher:
    channels = [DiscordWebhookChannel(settings.discord_webhook, timeout=settings.http_timeout)]
    for chat_id in settings.telegram_chat_ids:
        channels.append(TelegramChannel(settings.telegram_bot_token, chat_id, timeout=settings.http_timeout))
    return AlertDispatcher(channels, retries=settings.alert_retries, backoff=settings.retry_backoff)


def build_printer(settings: Settings) -> Optional[PrinterActionClient]:
    if not settings.moonraker_api_url or settings.printer_action == "none":
        logger.info("Printer control disabled")
        return None
    client = MoonrakerClient(settings.moonraker_api_url, timeout=settings.http_timeout)
    return PrinterActionClient(
        client,
        action=settings.printer_action,
        retries=settings.alert_retries,
        backoff=settings.retry_backoff,
    )


def build_guardian(settings: Settings) -> PrintGuardian:
    if settings.detector_backend == "clip" and not os.path.exists(settings.label_file):
        labels = {1: "failed print"}  # the classifier's only failure class
    else:
        labels = load_labels(settings.label_file)
    return PrintGuardian(
        cycler=ImageSourceCycler(
            settings.image_urls,
            timeout=settings.http_timeout,
            flip_image=settings.flip_image,
            max_failures=settings.max_fetch_failures,
        ),
        detector=build_detector(settings),
        detection_filter=DetectionFilter(settings.objectness_threshold, settings.class_prob_threshold, labels),
        tracker=FailureTracker(
            confirmation_count=settings.confirmation_count,
            miss_tolerance=settings.miss_tolerance,
            clear_count=settings.clear_count,
            cooldown=settings.alert_cooldown,
        ),
        dispatcher=build_dispatcher(settings),
        printer=build_printer(settings),
        check_interval=settings.check_interval,
        ready_file=settings.ready_file,
        output_dir=settings.output_dir,
    )


def install_signal_handlers(stop_event: threading.Event) -> None:
    def _stop(signum, _frame) -> None:
        logger.info("Received signal %d; finishing current tick", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)


def main() -> int:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error("%s", e)
        return 2
    logging.getLogger().setLevel(settings.log_level)

    try:
        guardian = build_guardian(settings)
    except ConfigError as e:
        logger.error("%s", e)
        return 2
    except TransportError as e:
        logger.error("Could not fetch model weights: %s", e)
        return 1

    logger.info(
        "Thresholds: objectness >= %.2f, class probability >= %.2f; confirm after %d hit(s)",
        settings.objectness_threshold, settings.class_prob_threshold, settings.confirmation_count,
    )

    stop_event = threading.Event()
    install_signal_handlers(stop_event)
    guardian.run(stop_event)
    return 0


if __name__ == "__main__":
    sys.exit(main())
