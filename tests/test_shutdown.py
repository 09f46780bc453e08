from __future__ import annotations

import signal

import allure

from taskline.pipeline.process import ProcessRegistry
from taskline.pipeline.shutdown import SHUTDOWN_EXIT_CODE, ShutdownController

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Shutdown"),
]


class _RecordingRegistry(ProcessRegistry):
    def __init__(self) -> None:
        super().__init__()
        self.kills: list[tuple[signal.Signals, float]] = []

    def kill_all(self, sig: signal.Signals = signal.SIGTERM, wait: float = 2.0) -> None:
        self.kills.append((sig, wait))


def test_first_interrupt_requests_graceful_stop() -> None:
    registry = _RecordingRegistry()
    controller = ShutdownController(registry, kill_wait=0.1)

    controller.handle("SIGINT")

    assert controller.requested
    assert controller.cancelled()
    assert not controller.forced
    assert registry.kills == []


def test_second_interrupt_kills_tracked_processes_once() -> None:
    registry = _RecordingRegistry()
    controller = ShutdownController(registry, kill_wait=0.1)

    controller.handle("SIGINT")
    controller.handle("SIGTERM")
    controller.handle("SIGINT")

    assert controller.forced
    assert registry.kills == [(signal.SIGTERM, 0.1)]


def test_queued_events_are_drained_in_order() -> None:
    registry = _RecordingRegistry()
    controller = ShutdownController(registry)
    controller.notify("SIGINT")

    assert not controller.requested
    controller.drain()
    assert controller.requested
    assert registry.kills == []


def test_wait_returns_early_once_requested() -> None:
    controller = ShutdownController(_RecordingRegistry())

    assert controller.wait(0.01) is False
    controller.handle("SIGINT")
    assert controller.wait(5) is True


def test_install_routes_events_through_consumer_and_restores_handlers() -> None:
    registry = _RecordingRegistry()
    controller = ShutdownController(registry, kill_wait=0.1)
    before = signal.getsignal(signal.SIGINT)

    with controller.install():
        assert signal.getsignal(signal.SIGINT) is not before
        controller.notify("SIGINT")
        assert controller.wait(5)

    assert signal.getsignal(signal.SIGINT) is before
    assert not controller.forced


def test_exit_code_matches_sigint_convention() -> None:
    assert SHUTDOWN_EXIT_CODE == 130
