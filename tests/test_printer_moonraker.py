"""Tests for the Moonraker printer action client."""
from __future__ import annotations

import pytest
import requests

from detections import BoundingBox, FilteredDetection
from errors import TransportError
from failure_tracker import build_event
from fakes import FakeResponse, FakeSession
from printer_moonraker import MoonrakerClient, PrinterActionClient

API = "http://printer:7125"


def _status(state: str) -> FakeResponse:
    return FakeResponse(200, json_data={"result": {"status": {"print_stats": {"state": state}}}})


def _event(episode: int = 1, source: int = 0):
    det = FilteredDetection(class_id=0, objectness=1, class_probability=1, box=BoundingBox(0, 0, 1, 1), label="failure")
    return build_event(source, [det], episode=episode, timestamp=0.0)


def _printer_handler(state: str, post_reply=None):
    posts = []

    def handler(method, url, kwargs):
        if method == "GET":
            return _status(state)
        posts.append(url)
        return post_reply if post_reply is not None else FakeResponse(200, json_data={"result": "ok"})

    return handler, posts


def test_pause_posts_once_per_episode() -> None:
    handler, posts = _printer_handler("printing")
    printer = PrinterActionClient(MoonrakerClient(API, session=FakeSession(handler=handler)), sleep=lambda s: None)

    assert printer.pause_or_cancel(_event()) is True
    assert printer.pause_or_cancel(_event()) is False

    assert posts == [f"{API}/printer/print/pause"]
    assert printer.last_status["result"]["status"]["print_stats"]["state"] == "printing"


def test_new_episode_pauses_again() -> None:
    handler, posts = _printer_handler("printing")
    printer = PrinterActionClient(MoonrakerClient(API, session=FakeSession(handler=handler)), sleep=lambda s: None)

    printer.pause_or_cancel(_event(episode=1))
    printer.pause_or_cancel(_event(episode=2))

    assert len(posts) == 2


def test_already_paused_is_noop() -> None:
    handler, posts = _printer_handler("paused")
    printer = PrinterActionClient(MoonrakerClient(API, session=FakeSession(handler=handler)), sleep=lambda s: None)

    assert printer.pause_or_cancel(_event()) is False
    assert posts == []


def test_cancel_action_uses_cancel_endpoint() -> None:
    handler, posts = _printer_handler("printing")
    printer = PrinterActionClient(
        MoonrakerClient(API, session=FakeSession(handler=handler)), action="cancel", sleep=lambda s: None
    )

    printer.pause_or_cancel(_event())

    assert posts == [f"{API}/printer/print/cancel"]


def test_none_action_does_nothing() -> None:
    session = FakeSession()
    printer = PrinterActionClient(MoonrakerClient(API, session=session), action="none")

    assert printer.pause_or_cancel(_event()) is False
    assert session.calls == []


def test_unreachable_controller_raises_after_retries() -> None:
    session = FakeSession([requests.ConnectionError("no route")])
    slept = []
    printer = PrinterActionClient(MoonrakerClient(API, session=session), retries=3, backoff=1.0, sleep=slept.append)

    with pytest.raises(TransportError):
        printer.pause_or_cancel(_event())

    posts = [c for c in session.calls if c[0] == "POST"]
    assert len(posts) == 3
    assert slept == [1.0, 2.0]


def test_failed_pause_can_be_retried_for_same_episode() -> None:
    handler, posts = _printer_handler("printing", post_reply=FakeResponse(503))
    printer = PrinterActionClient(
        MoonrakerClient(API, session=FakeSession(handler=handler)), retries=1, sleep=lambda s: None
    )

    with pytest.raises(TransportError):
        printer.pause_or_cancel(_event())
    with pytest.raises(TransportError):
        printer.pause_or_cancel(_event())
    assert len(posts) == 2


def test_client_endpoints() -> None:
    session = FakeSession([FakeResponse(200, json_data={})])
    client = MoonrakerClient(API + "/", session=session)

    client.cancel_print()
    client.get_printer_status()

    assert session.calls[0][:2] == ("POST", f"{API}/printer/print/cancel")
    assert session.calls[1][:2] == ("GET", f"{API}/printer/objects/query?webhooks&print_stats")
