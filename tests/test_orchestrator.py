"""Tests for the tick loop wiring fetch, detection, consolidation and dispatch."""
from __future__ import annotations

import threading

import pytest
import requests

from detection_filter import DetectionFilter
from errors import InferenceError
from failure_tracker import FailureTracker, Phase, Transition
from fakes import FakeResponse, FakeSession, RecordingChannel, ScriptedDetector, detection, jpeg_bytes
from image_source import ImageSourceCycler
from notifier import AlertDispatcher, DiscordWebhookChannel
from orchestrator import PrintGuardian
from printer_moonraker import MoonrakerClient, PrinterActionClient

URLS = ["http://cam/a.jpg", "http://cam/b.jpg"]
HIT = [detection(0, objectness=0.9, probability=0.9)]
MISS = []


def _guardian(script, urls=URLS[:1], channel=None, printer=None, session=None, tmp_path=None, **tracker_kwargs):
    tracker_kwargs.setdefault("confirmation_count", 3)
    tracker_kwargs.setdefault("miss_tolerance", 1)
    tracker_kwargs.setdefault("clear_count", 2)
    clock = iter(range(10_000))
    channel = channel or RecordingChannel()
    guardian = PrintGuardian(
        cycler=ImageSourceCycler(urls, session=session or FakeSession([FakeResponse(200, jpeg_bytes())])),
        detector=ScriptedDetector(script),
        detection_filter=DetectionFilter(0.08, 0.5, {0: "spaghetti"}),
        tracker=FailureTracker(clock=lambda: float(next(clock)), **tracker_kwargs),
        dispatcher=AlertDispatcher([channel], retries=2, sleep=lambda s: None),
        printer=printer,
        check_interval=0.01,
        ready_file=str(tmp_path / ".ready") if tmp_path else None,
        output_dir=str(tmp_path / "output") if tmp_path else None,
    )
    return guardian, channel


def _printer(state: str = "printing"):
    posts = []

    def handler(method, url, kwargs):
        if method == "GET":
            return FakeResponse(200, json_data={"result": {"status": {"print_stats": {"state": state}}}})
        posts.append(url)
        return FakeResponse(200, json_data={"result": "ok"})

    client = MoonrakerClient("http://printer:7125", session=FakeSession(handler=handler))
    return PrinterActionClient(client, sleep=lambda s: None), posts


def test_raise_alerts_and_pauses_once(tmp_path) -> None:
    printer, posts = _printer()
    guardian, channel = _guardian([HIT] * 6, printer=printer, tmp_path=tmp_path)

    transitions = [guardian.tick() for _ in range(6)]

    assert transitions.count(Transition.RAISE) == 1
    assert transitions[2] is Transition.RAISE
    titles = [sent[0] for sent in channel.sent]
    assert titles == ["Print Failure Detected", "Print Paused Due to Failure"]
    assert channel.sent[0][4] is not None  # annotated snapshot attached
    assert posts == ["http://printer:7125/printer/print/pause"]
    assert len(list((tmp_path / "output").iterdir())) == 1


def test_webhook_500_leaves_source_confirmed(tmp_path) -> None:
    hook_session = FakeSession([FakeResponse(500)])
    channel = DiscordWebhookChannel("https://discord.example/hook", session=hook_session)
    guardian, _ = _guardian([HIT] * 4, channel=channel, tmp_path=tmp_path)

    transitions = [guardian.tick() for _ in range(4)]

    assert transitions[2] is Transition.RAISE
    assert transitions[3] is Transition.NONE
    st = guardian.tracker.state(0)
    assert st.phase is Phase.CONFIRMED
    assert st.failure_active
    assert len(hook_session.calls) == 2  # bounded retries, then given up


def test_scripted_scenario_hit_hit_miss_hit() -> None:
    guardian, channel = _guardian([HIT, HIT, MISS, HIT])

    for _ in range(4):
        guardian.tick()

    st = guardian.tracker.state(0)
    assert st.phase is Phase.SUSPECTED
    assert st.consecutive_hits == 1
    assert channel.sent == []


def test_fetch_error_leaves_state_unchanged() -> None:
    session = FakeSession([
        FakeResponse(200, jpeg_bytes()),
        FakeResponse(200, jpeg_bytes()),
        requests.Timeout("slow"),
        FakeResponse(503),
        FakeResponse(200, b"garbage"),
        FakeResponse(200, jpeg_bytes()),
    ])
    guardian, channel = _guardian([HIT, HIT, HIT], session=session)

    guardian.tick()
    guardian.tick()
    before = vars(guardian.tracker.state(0)).copy()
    results = [guardian.tick() for _ in range(3)]

    assert results == [None, None, None]
    assert vars(guardian.tracker.state(0)) == before
    assert guardian.tick() is Transition.RAISE


def test_inference_error_leaves_state_unchanged() -> None:
    guardian, _ = _guardian([HIT, HIT, InferenceError("model fault"), HIT])

    guardian.tick()
    guardian.tick()
    before = vars(guardian.tracker.state(0)).copy()

    assert guardian.tick() is None
    assert vars(guardian.tracker.state(0)) == before
    assert guardian.tick() is Transition.RAISE


def test_sources_are_consolidated_independently() -> None:
    # Ticks alternate between cameras: a, b, a, b, ...
    script = [HIT, MISS, HIT, MISS, HIT, MISS]
    guardian, channel = _guardian(script, urls=URLS, miss_tolerance=0)

    transitions = [guardian.tick() for _ in range(6)]

    assert transitions[4] is Transition.RAISE
    assert guardian.tracker.state(0).phase is Phase.CONFIRMED
    assert guardian.tracker.state(1).phase is Phase.IDLE
    assert len(channel.sent) == 1


def test_clear_then_new_episode_alerts_again() -> None:
    guardian, channel = _guardian([HIT, MISS, MISS, HIT], confirmation_count=1, clear_count=2)

    transitions = [guardian.tick() for _ in range(4)]

    assert transitions == [Transition.RAISE, Transition.NONE, Transition.CLEAR, Transition.RAISE]
    assert len(channel.sent) == 2


def test_printer_failure_does_not_roll_back() -> None:
    session = FakeSession([requests.ConnectionError("printer down")])
    printer = PrinterActionClient(MoonrakerClient("http://printer:7125", session=session), retries=2, sleep=lambda s: None)
    guardian, channel = _guardian([HIT], printer=printer, confirmation_count=1)

    assert guardian.tick() is Transition.RAISE

    assert guardian.tracker.state(0).phase is Phase.CONFIRMED
    assert [sent[0] for sent in channel.sent] == ["Print Failure Detected"]


def test_offline_alert_after_repeated_fetch_failures() -> None:
    session = FakeSession([requests.ConnectionError("down")] * 3 + [FakeResponse(200, jpeg_bytes())])
    guardian, channel = _guardian([MISS], session=session)
    guardian.cycler.max_failures = 3

    for _ in range(4):
        guardian.tick()

    titles = [sent[0] for sent in channel.sent]
    assert titles == ["CRITICAL: Print Monitoring Offline", "RECOVERY: Print Monitoring Back Online"]


def test_ready_marker_written_after_first_pass_and_removed_on_stop(tmp_path) -> None:
    guardian, _ = _guardian([MISS] * 100, tmp_path=tmp_path)
    marker = tmp_path / ".ready"
    stop = threading.Event()
    seen = []

    original_tick = guardian.tick

    def tick_then_stop():
        result = original_tick()
        seen.append(marker.exists())
        if len(seen) == 2:
            stop.set()
        return result

    guardian.tick = tick_then_stop
    guardian.run(stop)

    assert seen == [True, True]
    assert not marker.exists()


def test_run_survives_unexpected_tick_error() -> None:
    guardian, _ = _guardian([MISS])
    stop = threading.Event()
    calls = []

    def exploding_tick():
        calls.append(1)
        if len(calls) == 3:
            stop.set()
        raise RuntimeError("boom")

    guardian.tick = exploding_tick
    guardian.run(stop)

    assert len(calls) == 3


@pytest.mark.parametrize("cooldown", [300, 1])
def test_pause_retried_after_printer_outage_at_raise(cooldown) -> None:
    down = [True]
    posts = []

    def handler(method, url, kwargs):
        if down[0]:
            return requests.ConnectionError("printer rebooting")
        if method == "GET":
            return FakeResponse(200, json_data={"result": {"status": {"print_stats": {"state": "printing"}}}})
        posts.append(url)
        return FakeResponse(200, json_data={"result": "ok"})

    client = MoonrakerClient("http://printer:7125", session=FakeSession(handler=handler))
    printer = PrinterActionClient(client, retries=2, sleep=lambda s: None)
    guardian, channel = _guardian([HIT] * 5, printer=printer, confirmation_count=1, cooldown=cooldown)

    assert guardian.tick() is Transition.RAISE
    assert posts == []
    down[0] = False
    for _ in range(4):
        guardian.tick()

    assert guardian.tracker.state(0).phase is Phase.CONFIRMED
    assert posts == ["http://printer:7125/printer/print/pause"]
    titles = [sent[0] for sent in channel.sent]
    assert titles.count("Print Paused Due to Failure") == 1
