# /live_mirror.py
"""
Live Mirror
- Mirrors a source folder into a target folder: one full copy on startup,
  then every create / modify / delete / rename is replayed as it happens.
- One-way, best effort. Only file contents are replicated (no permissions,
  timestamps or ownership).
- Linux inotify watches are installed per directory and kept in a
  handle -> path registry; folders created later are watched as they appear.
- Editor swap/lock/temp files are never mirrored. Exact names listed in the
  file named by $BLACKLIST_PATH (one per line) are skipped everywhere.
- --backend watchdog / polling uses a watchdog observer instead of raw
  inotify (e.g. for network mounts where inotify sees nothing).
- Styled console output:
  - file created / modified green
  - deleted orange
  - folders / moves light brown
  - errors red
- Optional plain log file (no color codes) with --log-dir.

Usage
  pip install inotify_simple watchdog pathspec colorama
  python live_mirror.py /src /dst
  BLACKLIST_PATH=~/.mirror_blacklist python live_mirror.py /src /dst --log-dir ./logs
  python live_mirror.py /mnt/share /dst --backend polling
"""

from __future__ import annotations

import argparse
import datetime as dt
import logging
import os
import queue
import select
import shutil
import signal
import stat
import struct
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping, Optional, Protocol

from colorama import init as colorama_init
from inotify_simple import INotify, flags, parse_events
from pathspec import PathSpec
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

LOGGER_NAME = "live_mirror"
BLACKLIST_ENV = "BLACKLIST_PATH"

MAX_WATCHES = 1024
POLL_INTERVAL_SEC = 0.5

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_READ_FAILURE = 2

BACKENDS = ("inotify", "watchdog", "polling")

WATCH_MASK = (
    flags.CREATE
    | flags.MODIFY
    | flags.DELETE
    | flags.MOVED_FROM
    | flags.MOVED_TO
    | flags.ONLYDIR
    | flags.DONT_FOLLOW
)

# sizeof(struct inotify_event) before the name
EVENT_HEADER_SIZE = 16
NAME_MAX = 255
EVENT_BUF_LEN = 1024 * (EVENT_HEADER_SIZE + NAME_MAX + 1)

# vim creates and deletes this name to check whether a directory is writable
VIM_WRITE_CHECK = "4913"

TEMPORARY_FILE_PATTERNS = [
    VIM_WRITE_CHECK,
    # Vim swap files
    "*.swp",
    "*.swo",
    "*.swn",
    ".*.sw?",
    # Emacs autosave / lock files
    "[#]*#",
    ".#*",
    # Backup / temp suffixes
    "*~",
    "*.bak",
    "*.tmp",
    # IDE
    "*.code-workspace.temp",
    ".vscode",
    # LibreOffice lock files
    ".~lock.*#",
]


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "MODIFY": Ansi.GREEN,
    "DELETE": Ansi.ORANGE,
    "MKDIR": Ansi.LIGHT_BROWN,
    "MOVE": Ansi.LIGHT_BROWN,
}

EVENT_LABELS = {
    "MKDIR": "📁 New folder",
    "COPY": "📝 File created",
    "MODIFY": "✏️ Modified",
    "DELETE": "🗑️ Deleted",
    "MOVE": "🔀 Moved",
}


def _supports_color(stream) -> bool:
    isatty = getattr(stream, "isatty", None)
    if isatty is None:
        return False
    try:
        return isatty()
    except ValueError:
        # closed stream
        return False


class ColorizingFormatter(logging.Formatter):
    """Colours the action label, folder paths and anything at ERROR or above."""

    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        label = getattr(record, "label", None) or action
        if action and label in base:
            action_color = ACTION_COLORS.get(action, "")
            if action_color:
                base = base.replace(label, f"{action_color}{label}{Ansi.RESET}", 1)

        path_text = getattr(record, "path_text", None)
        if getattr(record, "is_dir", False) and path_text and path_text in base:
            base = base.replace(path_text, f"{Ansi.LIGHT_BROWN}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "live_mirror") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    logger.propagate = False

    if logger.handlers:
        return logger

    colorama_init()

    datefmt = "%Y-%m-%d %H:%M:%S"

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(
        ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt="[%(asctime)s] %(message)s", datefmt=datefmt)
    )
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt="%(asctime)s | %(levelname)s | %(message)s", datefmt=datefmt))
        fh.setLevel(level)
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else path.is_dir()
    logger.log(level, f"{action} | {message}", extra=extra)


def log_event(logger: logging.Logger, action: str, src: Path, dst: Path, is_dir: bool = False) -> None:
    """One line per mirrored change: ``<emoji> <label>: <src> → <dst>``."""
    label = EVENT_LABELS[action]
    logger.info(
        f"{label}: {src} → {dst}",
        extra={"action": action, "label": label, "path_text": str(dst), "is_dir": is_dir},
    )


class DiagnosticSink(Protocol):
    def report(self, action: str, path: Path, error: Exception) -> None:
        ...


class LoggingSink:
    """Default sink: recoverable failures become ERROR lines and nothing else."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def report(self, action: str, path: Path, error: Exception) -> None:
        log_action(self.logger, action, f"ERROR {path} | {error}", path=path, is_dir=False, level=logging.ERROR)


# -------------------------
# Exclusion
# -------------------------

class PathFilter:
    """
    Decides by base name whether an entry is left alone: editor temp files
    (pattern match) or names from the blacklist (exact match).
    """

    def __init__(self, blacklist: Iterable[str] = (), patterns: Iterable[str] = TEMPORARY_FILE_PATTERNS):
        self.blacklist = frozenset(blacklist)
        self.spec = PathSpec.from_lines("gitwildmatch", list(patterns))

    def is_excluded(self, name: str) -> bool:
        return bool(name) and self.spec.match_file(name)

    def is_blacklisted(self, name: str) -> bool:
        return name in self.blacklist

    def skips(self, name: str) -> bool:
        return self.is_excluded(name) or self.is_blacklisted(name)

    def skips_any(self, names: Iterable[str]) -> bool:
        return any(self.skips(name) for name in names)


def load_blacklist(environ: Optional[Mapping[str, str]] = None) -> frozenset[str]:
    env = os.environ if environ is None else environ
    raw = env.get(BLACKLIST_ENV)
    if not raw:
        return frozenset()

    try:
        text = Path(raw).expanduser().read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logging.getLogger(LOGGER_NAME).warning("Blacklist not readable, nothing blacklisted: %s | %s", raw, e)
        return frozenset()

    return frozenset(line for line in text.splitlines() if line.strip())


# -------------------------
# Config
# -------------------------

@dataclass(frozen=True)
class MirrorConfig:
    source_root: Path
    target_root: Path
    path_filter: PathFilter = field(default_factory=PathFilter)
    backend: str = "inotify"
    max_watches: int = MAX_WATCHES
    poll_interval_sec: float = POLL_INTERVAL_SEC
    log_dir: Optional[Path] = None

    def destination_for(self, src: Path) -> Path:
        """Swap the source-root prefix of ``src`` for the target root. ValueError if ``src`` is outside."""
        rel = Path(src).relative_to(self.source_root)
        if ".." in rel.parts:
            raise ValueError(f"{src} escapes {self.source_root}")
        return self.target_root / rel


# -------------------------
# Mirror operations
# -------------------------

class FileKind(Enum):
    DIRECTORY = "directory"
    FILE = "file"
    OTHER = "other"
    MISSING = "missing"


def classify(path: Path) -> FileKind:
    try:
        mode = os.lstat(path).st_mode
    except OSError:
        return FileKind.MISSING
    if stat.S_ISDIR(mode):
        return FileKind.DIRECTORY
    if stat.S_ISREG(mode):
        return FileKind.FILE
    return FileKind.OTHER


class MirrorEngine:
    """
    Side effects on the target tree. Every operation reports failures to the
    sink and returns False instead of raising, so one bad entry never stops
    a walk or the event loop.
    """

    def __init__(self, path_filter: PathFilter, sink: DiagnosticSink, logger: Optional[logging.Logger] = None):
        self.path_filter = path_filter
        self.sink = sink
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def copy_file(self, src: Path, dst: Path) -> bool:
        # copyfile opens src before truncating dst
        try:
            shutil.copyfile(src, dst)
        except OSError as e:
            self.sink.report("COPY", Path(src), e)
            return False
        return True

    def ensure_dir(self, path: Path) -> bool:
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            self.sink.report("MKDIR", Path(path), e)
            return False
        return True

    def delete_path(self, path: Path) -> bool:
        path = Path(path)
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            self.sink.report("DELETE", path, e)
            return False
        return True

    def move_path(self, src: Path, dst: Path) -> bool:
        if not os.path.lexists(src) or not self.ensure_dir(Path(dst).parent):
            return False
        try:
            os.replace(src, dst)
        except OSError as e:
            self.sink.report("MOVE", Path(src), e)
            return False
        return True

    def sync_tree(self, src: Path, dst: Path) -> int:
        """
        Copy every regular file under ``src`` into ``dst``, creating folders as
        needed. Never deletes anything in ``dst`` and always rewrites files.
        Symlinks and special files are skipped. Returns the number of files copied.
        """
        copied = 0
        stack = [(Path(src), Path(dst))]
        while stack:
            src_dir, dst_dir = stack.pop()
            try:
                with os.scandir(src_dir) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except (FileNotFoundError, NotADirectoryError):
                continue
            except OSError as e:
                self.sink.report("SYNC", src_dir, e)
                continue

            if not self.ensure_dir(dst_dir):
                continue

            for entry in reversed(entries):
                if self.path_filter.skips(entry.name):
                    continue
                src_path = src_dir / entry.name
                dst_path = dst_dir / entry.name
                try:
                    if entry.is_dir(follow_symlinks=False):
                        stack.append((src_path, dst_path))
                    elif entry.is_file(follow_symlinks=False) and self.copy_file(src_path, dst_path):
                        copied += 1
                        log_action(self.logger, "COPY", f"(sync) {src_path} -> {dst_path}", path=dst_path,
                                   is_dir=False, level=logging.DEBUG)
                except OSError as e:
                    self.sink.report("SYNC", src_path, e)
        return copied


# -------------------------
# inotify: notifier, records, registry
# -------------------------

class InotifyNotifier:
    """Kernel side of the watches. inotify_simple owns the fd; batches are read raw."""

    def __init__(self):
        self._inotify = INotify()
        self._poller = select.poll()
        self._poller.register(self._inotify.fileno(), select.POLLIN)

    def add_watch(self, path: Path) -> int:
        return self._inotify.add_watch(str(path), WATCH_MASK)

    def rm_watch(self, wd: int) -> None:
        self._inotify.rm_watch(wd)

    def read_batch(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Block up to ``timeout`` seconds. None on timeout, raw event bytes otherwise."""
        timeout_ms = None if timeout is None else int(timeout * 1000)
        if not self._poller.poll(timeout_ms):
            return None
        return os.read(self._inotify.fileno(), EVENT_BUF_LEN)

    def close(self) -> None:
        self._inotify.close()


class ChangeKind(Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED_FROM = "moved_from"
    MOVED_TO = "moved_to"
    WATCH_RETIRED = "watch_retired"
    OVERFLOW = "overflow"

    @classmethod
    def from_mask(cls, mask: int) -> Optional["ChangeKind"]:
        if mask & flags.Q_OVERFLOW:
            return cls.OVERFLOW
        if mask & flags.IGNORED:
            return cls.WATCH_RETIRED
        if mask & flags.CREATE:
            return cls.CREATED
        if mask & flags.MOVED_TO:
            return cls.MOVED_TO
        if mask & flags.MODIFY:
            return cls.MODIFIED
        if mask & flags.DELETE:
            return cls.DELETED
        if mask & flags.MOVED_FROM:
            return cls.MOVED_FROM
        return None


@dataclass(frozen=True)
class ChangeRecord:
    watch_id: int
    kind: Optional[ChangeKind]
    name: str
    cookie: int = 0
    is_dir: bool = False

    @property
    def is_self_event(self) -> bool:
        return not self.name


def decode_batch(data: bytes) -> list[ChangeRecord]:
    """
    Turn one read() worth of back-to-back inotify events into records.
    inotify_simple walks the header + padded-name layout; names come back
    fs-decoded. Raises ValueError when the buffer ends inside a header.
    """
    try:
        events = parse_events(data)
    except struct.error as e:
        raise ValueError(f"undecodable event batch ({len(data)} bytes): {e}") from e
    return [
        ChangeRecord(
            watch_id=event.wd,
            kind=ChangeKind.from_mask(event.mask),
            name=event.name,
            cookie=event.cookie,
            is_dir=bool(event.mask & flags.ISDIR),
        )
        for event in events
    ]


def _is_real_dir(entry: os.DirEntry) -> bool:
    try:
        return entry.is_dir(follow_symlinks=False)
    except OSError:
        return False


class WatchRegistry:
    """
    Maps live watch handles to the directory each one was installed on.

    Bounded by ``capacity``: once full, new directories still get a kernel
    watch but are not tracked, so their events cannot be resolved and are
    dropped. The kernel hands back the same handle for a directory it already
    watches, in which case the stored path is refreshed (renames) and no
    capacity is used.
    """

    def __init__(
        self,
        notifier,
        path_filter: PathFilter,
        sink: DiagnosticSink,
        capacity: int = MAX_WATCHES,
        logger: Optional[logging.Logger] = None,
    ):
        self.notifier = notifier
        self.path_filter = path_filter
        self.sink = sink
        self.capacity = capacity
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._paths: dict[int, Path] = {}
        self._capacity_warned = False

    def __len__(self) -> int:
        return len(self._paths)

    def __contains__(self, wd: int) -> bool:
        return wd in self._paths

    @property
    def is_full(self) -> bool:
        return len(self._paths) >= self.capacity

    def register(self, path: Path) -> Optional[int]:
        """Watch ``path``. Returns the handle, or None when over capacity. OSError from the kernel propagates."""
        path = Path(path)
        wd = self.notifier.add_watch(path)
        if wd in self._paths or not self.is_full:
            self._paths[wd] = path
            return wd

        if not self._capacity_warned:
            self._capacity_warned = True
            self.logger.warning(
                "Watch limit (%d) reached at %s; changes in further folders are not mirrored",
                self.capacity,
                path,
            )
        return None

    def register_recursive(self, root: Path) -> int:
        """Watch ``root`` and every folder below it. Returns how many watches are tracked."""
        tracked = 0
        stack = [Path(root)]
        while stack:
            path = stack.pop()
            try:
                if self.register(path) is not None:
                    tracked += 1
            except (FileNotFoundError, NotADirectoryError):
                continue
            except OSError as e:
                self.sink.report("WATCH", path, e)

            try:
                with os.scandir(path) as it:
                    children = sorted(
                        (e.name for e in it if not self.path_filter.skips(e.name) and _is_real_dir(e)),
                        reverse=True,
                    )
            except (FileNotFoundError, NotADirectoryError):
                continue
            except OSError as e:
                self.sink.report("WATCH", path, e)
                continue

            stack.extend(path / name for name in children)
        return tracked

    def resolve(self, wd: int) -> Optional[Path]:
        return self._paths.get(wd)

    def discard(self, wd: int) -> Optional[Path]:
        return self._paths.pop(wd, None)

    def forget_tree(self, path: Path, release: bool = False) -> int:
        """Drop ``path`` and everything below it. ``release`` also removes the kernel watches."""
        path = Path(path)
        doomed = [wd for wd, p in self._paths.items() if p == path or path in p.parents]
        for wd in doomed:
            del self._paths[wd]
            if release:
                try:
                    self.notifier.rm_watch(wd)
                except OSError:
                    # kernel already retired it
                    pass
        return len(doomed)


# -------------------------
# Dispatch
# -------------------------

class ChangeDispatcher:
    """Turns one path-level change in the source tree into mirror operations."""

    def __init__(self, config: MirrorConfig, engine: MirrorEngine, logger: Optional[logging.Logger] = None):
        self.config = config
        self.engine = engine
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def watch_directory(self, path: Path) -> None:
        """Start watching a folder that appeared. No-op for recursive observers."""

    def forget_directory(self, path: Path, release: bool) -> None:
        """Drop watches under a folder that left the tree. No-op for recursive observers."""

    def close(self) -> None:
        """Release the backend."""

    def _destination(self, src: Path) -> Optional[Path]:
        try:
            return self.config.destination_for(src)
        except ValueError as e:
            self.engine.sink.report("TRANSLATE", src, e)
            return None

    def apply(self, kind: ChangeKind, src: Path, is_dir: bool = False) -> None:
        dst = self._destination(src)
        if dst is None:
            return

        if kind in (ChangeKind.DELETED, ChangeKind.MOVED_FROM):
            if is_dir:
                self.forget_directory(src, release=kind is ChangeKind.MOVED_FROM)
            if self.engine.delete_path(dst):
                log_event(self.logger, "DELETE", src, dst, is_dir=is_dir)
            return

        # the filesystem may have moved on since the event; trust lstat over the event
        state = classify(src)

        if kind in (ChangeKind.CREATED, ChangeKind.MOVED_TO):
            if state is FileKind.DIRECTORY:
                self.watch_directory(src)
                self.engine.sync_tree(src, dst)
                log_event(self.logger, "MKDIR", src, dst, is_dir=True)
            elif state is FileKind.FILE:
                if self.engine.ensure_dir(dst.parent) and self.engine.copy_file(src, dst):
                    log_event(self.logger, "COPY", src, dst)
        elif kind is ChangeKind.MODIFIED and state is FileKind.FILE:
            if self.engine.ensure_dir(dst.parent) and self.engine.copy_file(src, dst):
                log_event(self.logger, "MODIFY", src, dst)

    def apply_move(self, old_src: Path, new_src: Path, is_dir: bool = False) -> None:
        """Rename the mirrored entry in place; fall back to delete + create when that is not possible."""
        old_dst = self._destination(old_src)
        new_dst = self._destination(new_src)
        if old_dst is None or new_dst is None or not self.engine.move_path(old_dst, new_dst):
            self.apply(ChangeKind.MOVED_FROM, old_src, is_dir=is_dir)
            self.apply(ChangeKind.MOVED_TO, new_src, is_dir=is_dir)
            return

        log_event(self.logger, "MOVE", old_dst, new_dst, is_dir=is_dir)
        # earlier events in the batch may have been about the old name; bring the
        # moved entry up to date with what is on disk now
        if is_dir:
            self.forget_directory(old_src, release=False)
            self.watch_directory(new_src)
            self.engine.sync_tree(new_src, new_dst)
        elif classify(new_src) is FileKind.FILE:
            self.engine.copy_file(new_src, new_dst)


class InotifyDispatcher(ChangeDispatcher):
    """
    The event loop over raw inotify batches: decode, resolve the watch
    handle to its folder, then dispatch. New folders are watched before
    they are synced so nothing written into them afterwards is lost.
    """

    def __init__(
        self,
        config: MirrorConfig,
        engine: MirrorEngine,
        registry: WatchRegistry,
        notifier,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(config, engine, logger)
        self.registry = registry
        self.notifier = notifier

    def watch_directory(self, path: Path) -> None:
        self.registry.register_recursive(path)

    def forget_directory(self, path: Path, release: bool) -> None:
        self.registry.forget_tree(path, release=release)

    def close(self) -> None:
        self.notifier.close()

    def resync(self) -> None:
        self.logger.warning("Kernel event queue overflowed; rescanning %s", self.config.source_root)
        self.registry.register_recursive(self.config.source_root)
        copied = self.engine.sync_tree(self.config.source_root, self.config.target_root)
        self.logger.info("Rescan done (%d files copied)", copied)

    def _actionable(self, record: ChangeRecord) -> bool:
        return (
            not record.is_self_event
            and not self.config.path_filter.skips(record.name)
            and self.registry.resolve(record.watch_id) is not None
        )

    def _is_rename_pair(self, first: ChangeRecord, second: ChangeRecord) -> bool:
        return (
            first.kind is ChangeKind.MOVED_FROM
            and second.kind is ChangeKind.MOVED_TO
            and first.cookie != 0
            and first.cookie == second.cookie
            and self._actionable(first)
            and self._actionable(second)
        )

    def dispatch(self, record: ChangeRecord) -> None:
        kind = record.kind
        if kind is ChangeKind.OVERFLOW:
            self.resync()
            return
        if kind is ChangeKind.WATCH_RETIRED:
            self.registry.discard(record.watch_id)
            return
        if kind is None or record.is_self_event or self.config.path_filter.skips(record.name):
            return

        parent = self.registry.resolve(record.watch_id)
        if parent is None:
            return
        self.apply(kind, parent / record.name, is_dir=record.is_dir)

    def process_batch(self, data: bytes) -> None:
        try:
            records = decode_batch(data)
        except ValueError as e:
            self.logger.error("Dropping event batch: %s", e)
            return

        i = 0
        while i < len(records):
            record = records[i]
            if i + 1 < len(records) and self._is_rename_pair(record, records[i + 1]):
                after = records[i + 1]
                self.apply_move(
                    self.registry.resolve(record.watch_id) / record.name,
                    self.registry.resolve(after.watch_id) / after.name,
                    is_dir=record.is_dir,
                )
                i += 2
                continue
            self.dispatch(record)
            i += 1

    def run(self, stop_event: Optional[threading.Event] = None) -> int:
        stop_event = stop_event or threading.Event()
        self.logger.info("🛡️  Watching for changes in: %s (%d folders)", self.config.source_root, len(self.registry))
        while not stop_event.is_set():
            try:
                data = self.notifier.read_batch(self.config.poll_interval_sec)
            except OSError as e:
                self.logger.error("Reading change notifications failed: %s", e)
                return EXIT_READ_FAILURE
            if data is None:
                continue
            if not data:
                self.logger.error("Change notification stream closed")
                return EXIT_READ_FAILURE
            self.process_batch(data)
        return EXIT_OK


# -------------------------
# watchdog backends
# -------------------------

@dataclass(frozen=True)
class PathChange:
    kind: ChangeKind
    path: Path
    is_dir: bool = False
    dest: Optional[Path] = None


def _to_path(src_path) -> Path:
    if isinstance(src_path, bytes):
        return Path(os.fsdecode(src_path))
    return Path(src_path)


class WatchdogBridge(FileSystemEventHandler):
    """Runs on the observer thread; only queues changes for the dispatcher."""

    def __init__(self, changes: queue.Queue):
        self.changes = changes

    def on_created(self, event):
        self.changes.put(PathChange(ChangeKind.CREATED, _to_path(event.src_path), event.is_directory))

    def on_modified(self, event):
        if event.is_directory:
            return
        self.changes.put(PathChange(ChangeKind.MODIFIED, _to_path(event.src_path)))

    def on_deleted(self, event):
        self.changes.put(PathChange(ChangeKind.DELETED, _to_path(event.src_path), event.is_directory))

    def on_moved(self, event):
        self.changes.put(
            PathChange(
                ChangeKind.MOVED_FROM,
                _to_path(event.src_path),
                event.is_directory,
                dest=_to_path(event.dest_path),
            )
        )


class WatchdogDispatcher(ChangeDispatcher):
    def __init__(
        self,
        config: MirrorConfig,
        engine: MirrorEngine,
        logger: Optional[logging.Logger] = None,
        observer_factory=None,
    ):
        super().__init__(config, engine, logger)
        self.changes: queue.Queue = queue.Queue()
        factory = observer_factory or (PollingObserver if config.backend == "polling" else Observer)
        self.observer = factory()

    def start(self) -> "WatchdogDispatcher":
        self.observer.schedule(WatchdogBridge(self.changes), str(self.config.source_root), recursive=True)
        self.observer.start()
        return self

    def close(self) -> None:
        if self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=10)

    def skipped(self, path: Path) -> bool:
        # a recursive observer also reports from inside excluded folders,
        # and about the watched root itself
        if path == self.config.source_root:
            return True
        try:
            rel = path.relative_to(self.config.source_root)
        except ValueError:
            return True
        return self.config.path_filter.skips_any(rel.parts)

    def handle(self, change: PathChange) -> None:
        if change.dest is None:
            if not self.skipped(change.path):
                self.apply(change.kind, change.path, is_dir=change.is_dir)
            return

        old_skipped = self.skipped(change.path)
        new_skipped = self.skipped(change.dest)
        if not old_skipped and not new_skipped:
            self.apply_move(change.path, change.dest, is_dir=change.is_dir)
        elif not old_skipped:
            self.apply(ChangeKind.MOVED_FROM, change.path, is_dir=change.is_dir)
        elif not new_skipped:
            self.apply(ChangeKind.MOVED_TO, change.dest, is_dir=change.is_dir)

    def run(self, stop_event: Optional[threading.Event] = None) -> int:
        stop_event = stop_event or threading.Event()
        self.logger.info("🛡️  Watching for changes in: %s (%s)", self.config.source_root, self.config.backend)
        while not stop_event.is_set():
            try:
                change = self.changes.get(timeout=self.config.poll_interval_sec)
            except queue.Empty:
                if not self.observer.is_alive():
                    self.logger.error("The %s observer stopped unexpectedly", self.config.backend)
                    return EXIT_READ_FAILURE
                continue
            self.handle(change)
        return EXIT_OK


# -------------------------
# CLI / startup
# -------------------------

class MirrorArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(EXIT_FAILURE, f"{self.prog}: error: {message}\n")


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = MirrorArgumentParser(prog="live-mirror", description="Mirror a folder into another and keep it in sync.")
    p.add_argument("source_dir", help="Folder to mirror (must exist).")
    p.add_argument("target_dir", help="Folder to keep in sync (created if missing).")
    p.add_argument("--backend", choices=BACKENDS, default="inotify", help="Change notification backend.")
    p.add_argument("--max-watches", type=int, default=MAX_WATCHES, help="Most folders watched at once (inotify).")
    p.add_argument("--log-dir", type=str, default=None, help="Also write a plain log file here.")
    p.add_argument("-v", "--verbose", action="store_true", help="Log every copied file.")
    return p.parse_args(argv)


def resolve_source(raw: str) -> Path:
    source = Path(raw).expanduser().resolve(strict=True)
    if not source.is_dir():
        raise NotADirectoryError(f"Source is not a folder: {source}")
    return source


def resolve_target(raw: str) -> Path:
    target = Path(raw).expanduser()
    try:
        return target.resolve(strict=True)
    except OSError:
        pass
    try:
        target.mkdir(parents=True, exist_ok=True)
        return target.resolve(strict=True)
    except OSError:
        return target


def validate_roots(source: Path, target: Path) -> None:
    if source == target:
        raise ValueError("Source and target folders must be different.")
    if source in target.parents:
        raise ValueError("Target folder must NOT be inside source folder (would mirror itself).")
    if target in source.parents:
        raise ValueError("Source folder must NOT be inside target folder.")


def build_dispatcher(
    config: MirrorConfig,
    engine: MirrorEngine,
    sink: DiagnosticSink,
    logger: logging.Logger,
) -> ChangeDispatcher:
    """Set up the chosen backend. OSError means it could not be started."""
    if config.backend != "inotify":
        return WatchdogDispatcher(config, engine, logger).start()

    notifier = InotifyNotifier()
    registry = WatchRegistry(notifier, config.path_filter, sink, capacity=config.max_watches, logger=logger)
    registry.register_recursive(config.source_root)
    return InotifyDispatcher(config, engine, registry, notifier, logger)


def install_signal_handlers(stop_event: threading.Event, logger: logging.Logger) -> None:
    def _stop(signum, frame):
        logger.info("Stopping... (signal %d)", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    log_dir = Path(args.log_dir).expanduser() if args.log_dir else None
    logger = setup_logger(log_dir, verbose=args.verbose)

    try:
        source = resolve_source(args.source_dir)
        target = resolve_target(args.target_dir)
        validate_roots(source, target)
    except (OSError, ValueError) as e:
        logger.error("Config error: %s", e)
        return EXIT_FAILURE

    config = MirrorConfig(
        source_root=source,
        target_root=target,
        path_filter=PathFilter(load_blacklist()),
        backend=args.backend,
        max_watches=args.max_watches,
        log_dir=log_dir,
    )
    logger.info("Source: %s", source)
    logger.info("Target: %s", target)

    sink = LoggingSink(logger)
    engine = MirrorEngine(config.path_filter, sink, logger)

    logger.info("FULL SYNC: start")
    copied = engine.sync_tree(source, target)
    logger.info("FULL SYNC: done (%d files copied)", copied)

    try:
        dispatcher = build_dispatcher(config, engine, sink, logger)
    except OSError as e:
        logger.error("Could not start the %s backend: %s", config.backend, e)
        return EXIT_FAILURE

    stop_event = threading.Event()
    install_signal_handlers(stop_event, logger)

    logger.info("Starting watcher... (Ctrl+C to stop)")
    try:
        status = dispatcher.run(stop_event)
    except KeyboardInterrupt:
        logger.info("Stopping...")
        status = EXIT_OK
    finally:
        dispatcher.close()
        logger.info("Stopped.")
    return status


if __name__ == "__main__":
    raise SystemExit(main())
