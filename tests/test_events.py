from __future__ import annotations

import asyncio
import logging
import threading

import anyio

from payserver.events import EventAggregator, UserApprovedEvent
from payserver.models import User


def _event(approved: bool = True) -> UserApprovedEvent:
    return UserApprovedEvent(user=User(id="u1"), approved=approved, request_uri="https://pay.example.com/")


def test_publish_reaches_subscribers_until_unsubscribed() -> None:
    events = EventAggregator()
    received = []
    unsubscribe = events.subscribe(UserApprovedEvent, received.append)

    events.publish(_event())
    unsubscribe()
    events.publish(_event(False))

    assert [event.approved for event in received] == [True]


def test_publish_matches_base_types() -> None:
    events = EventAggregator()
    received = []
    events.subscribe(object, received.append)

    events.publish(_event())

    assert len(received) == 1


def test_failing_handler_does_not_reach_publisher(caplog) -> None:
    events = EventAggregator()
    received = []

    def _boom(event: UserApprovedEvent) -> None:
        raise RuntimeError("mail server down")

    events.subscribe(UserApprovedEvent, _boom)
    events.subscribe(UserApprovedEvent, received.append)
    caplog.set_level(logging.ERROR, logger="payserver.events")

    events.publish(_event())

    assert len(received) == 1
    assert "failed for UserApprovedEvent" in caplog.text


def test_async_handler_runs_without_loop() -> None:
    events = EventAggregator()
    received = []

    async def _handler(event: UserApprovedEvent) -> None:
        received.append(event)

    events.subscribe(UserApprovedEvent, _handler)
    events.publish(_event())

    assert events.wait_idle(2)
    assert len(received) == 1


def test_publish_without_loop_does_not_wait_for_async_handler() -> None:
    events = EventAggregator()
    release = threading.Event()
    received = []

    async def _slow_handler(event: UserApprovedEvent) -> None:
        while not release.is_set():
            await asyncio.sleep(0.01)
        received.append(event)

    events.subscribe(UserApprovedEvent, _slow_handler)
    events.publish(_event())

    assert received == []
    assert events.wait_idle(0.05) is False

    release.set()
    assert events.wait_idle(2)
    assert len(received) == 1


def test_async_handler_is_scheduled_on_running_loop() -> None:
    events = EventAggregator()
    received = []

    async def _handler(event: UserApprovedEvent) -> None:
        received.append(event)

    events.subscribe(UserApprovedEvent, _handler)

    async def _main() -> None:
        events.publish(_event())
        assert received == []
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    anyio.run(_main)

    assert len(received) == 1
