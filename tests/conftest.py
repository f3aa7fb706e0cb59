import logging
import time
from pathlib import Path

import pytest

from mimic import ChangeKind, EventQueue, MirrorWorker, RawChangeEvent, WatchSpec


def wait_for(predicate, timeout=5.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def logger():
    log = logging.getLogger("tests.mimic")
    log.setLevel(logging.DEBUG)
    log.propagate = True
    return log


@pytest.fixture
def roots(tmp_path):
    src = tmp_path / "src"
    dst = tmp_path / "dst"
    src.mkdir()
    dst.mkdir()
    return src, dst


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_worker(roots, logger, clock):
    src, dst = roots

    def _make(exclusions=(), ignore_window_sec=1.0):
        spec = WatchSpec(watch_root=src, dest_root=dst, exclusions=tuple(exclusions), ignore_window_sec=ignore_window_sec)
        return MirrorWorker(spec, EventQueue(), logger, idle_interval_sec=0.01, clock=clock)

    return _make


def created(path):
    return RawChangeEvent(ChangeKind.CREATED, Path(path))


def changed(path):
    return RawChangeEvent(ChangeKind.CHANGED, Path(path))


def deleted(path):
    return RawChangeEvent(ChangeKind.DELETED, Path(path))


def renamed(old, new):
    return RawChangeEvent(ChangeKind.RENAMED, Path(new), old_path=Path(old))
