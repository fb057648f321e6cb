import errno
import os
import struct
from pathlib import Path

import pytest

from live_mirror import (
    InotifyDispatcher,
    MirrorConfig,
    MirrorEngine,
    PathFilter,
    WatchRegistry,
)


def encode_event(wd, mask, name="", cookie=0):
    """Build one record the way the kernel lays it out: header, then the name NUL-padded to 16 bytes."""
    raw = name if isinstance(name, bytes) else os.fsencode(name)
    if raw:
        size = len(raw) + 1
        size += (-size) % 16
        raw = raw.ljust(size, b"\0")
    return struct.pack("iIII", wd, int(mask), cookie, len(raw)) + raw


class FakeNotifier:
    """Hands out one handle per directory path and serves queued raw batches."""

    def __init__(self):
        self.watches = {}
        self.removed = []
        self.batches = []
        self.refuse = set()
        self.read_error = None
        self.stop_event = None
        self.closed = False
        self._next_wd = 1

    def add_watch(self, path):
        path = Path(path)
        if path in self.refuse:
            raise PermissionError(errno.EACCES, "Permission denied", str(path))
        if not path.is_dir():
            raise FileNotFoundError(errno.ENOENT, "No such file or directory", str(path))
        wd = self.watches.get(path)
        if wd is None:
            wd = self._next_wd
            self._next_wd += 1
            self.watches[path] = wd
        return wd

    def rm_watch(self, wd):
        self.removed.append(wd)
        self.watches = {p: w for p, w in self.watches.items() if w != wd}

    def read_batch(self, timeout=None):
        if self.read_error is not None:
            raise self.read_error
        if self.batches:
            return self.batches.pop(0)
        if self.stop_event is not None:
            self.stop_event.set()
        return None

    def close(self):
        self.closed = True


class RecordingSink:
    def __init__(self):
        self.reports = []

    def report(self, action, path, error):
        self.reports.append((action, Path(path), error))


@pytest.fixture
def roots(tmp_path):
    source = tmp_path / "source"
    target = tmp_path / "target"
    source.mkdir()
    target.mkdir()
    return source, target


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def config(roots):
    source, target = roots
    return MirrorConfig(source_root=source, target_root=target, path_filter=PathFilter())


@pytest.fixture
def engine(config, sink):
    return MirrorEngine(config.path_filter, sink)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def mirror(config, engine, sink, notifier):
    """Dispatcher over a fake notifier, with the source root already watched."""

    def build(capacity=1024):
        registry = WatchRegistry(notifier, config.path_filter, sink, capacity=capacity)
        registry.register_recursive(config.source_root)
        return InotifyDispatcher(config, engine, registry, notifier)

    return build
