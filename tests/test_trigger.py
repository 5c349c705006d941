"""Tests for the thread-backed periodic trigger."""

from __future__ import annotations

import threading

import pytest

from calendar_retry.trigger import ThreadTrigger

pytestmark = pytest.mark.unit


class TestThreadTrigger:
    def test_unknown_callback_is_rejected(self) -> None:
        with pytest.raises(KeyError):
            ThreadTrigger().ensure_exists("missing", 5)

    def test_ensure_exists_is_idempotent(self) -> None:
        trigger = ThreadTrigger({"tick": lambda: None})
        try:
            trigger.ensure_exists("tick", 5)
            first = trigger.thread
            trigger.ensure_exists("tick", 5)
            assert trigger.thread is first
            assert trigger.is_active()
            assert trigger.interval_seconds == 300
        finally:
            trigger.remove_if_exists()
        assert not trigger.is_active()

    def test_remove_without_trigger_is_noop(self) -> None:
        trigger = ThreadTrigger({"tick": lambda: None})
        trigger.remove_if_exists()
        assert not trigger.is_active()

    def test_can_restart_after_removal(self) -> None:
        trigger = ThreadTrigger({"tick": lambda: None})
        trigger.ensure_exists("tick", 5)
        trigger.remove_if_exists()
        trigger.ensure_exists("tick", 5)
        try:
            assert trigger.is_active()
        finally:
            trigger.remove_if_exists()


class TestRunLoop:
    def test_calls_callback_until_stopped(self) -> None:
        stop = threading.Event()
        calls = []

        def tick():
            calls.append(1)
            if len(calls) == 3:
                stop.set()

        ThreadTrigger({"tick": tick})._run("tick", 0, stop)
        assert len(calls) == 3

    def test_callback_errors_do_not_stop_the_loop(self) -> None:
        stop = threading.Event()
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 2:
                stop.set()
            raise RuntimeError("pass failed")

        ThreadTrigger({"tick": flaky})._run("tick", 0, stop)
        assert len(calls) == 2

    def test_callback_can_remove_its_own_trigger(self) -> None:
        done = threading.Event()
        trigger = ThreadTrigger()

        def drain():
            trigger.remove_if_exists()
            done.set()

        trigger.register("drain", drain)
        trigger.ensure_exists("drain", 0)
        assert done.wait(timeout=5)
        assert not trigger.is_active()
