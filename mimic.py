# /mimic.py
"""
Mimic (no UI)
- Mirrors one or more watched folders into destination ("dev") folders in near-real time.
- Creates, modifies, deletes and renames are replayed as they are reported;
  nothing is reconciled at startup.
- One watchdog subscription, event queue and consumer thread per watched folder.
- Consecutive events for the same path collapse into the most recent one.
- Repeated 'modified' notifications for unchanged content are debounced.
- Ignores paths via case-insensitive glob rules (gitwildmatch syntax, e.g. **/node_modules/**).
- Notification-buffer overflow is not detected: watchdog drops it without telling the handler,
  so changes lost that way are not reported (OVERFLOW is only logged when a caller reports one).
- Styled console output:
  - COPY green
  - DELETE / RMDIR orange
  - RENAME light brown
  - IGNORE / DEBOUNCE grey
  - QUEUE cyan
  - errors red
- Log file is always plain (no color codes).
- Only one instance may run at a time (lock held on ~/.mimic/mimic.lock).

Usage
  pip install watchdog pathspec colorama
  python mimic.py --config mimic.json
  python mimic.py --config mimic.json --log-dir logs --ignore-window-ms 1500
"""

from __future__ import annotations

import argparse
import collections
import dataclasses
import datetime as dt
import errno
import json
import logging
import os
import shutil
import sys
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional, TextIO

from colorama import init as colorama_init
from pathspec import PathSpec
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

APP_DIR = Path.home() / ".mimic"
LOCK_PATH = APP_DIR / "mimic.lock"
DEFAULT_CONFIG_NAME = "mimic.json"

IDLE_INTERVAL_SEC = 0.2
CHANGE_IGNORE_WINDOW_MS = 1000
HEALTH_CHECK_SEC = 5.0
REARM_MAX_ATTEMPTS = 120
REARM_BACKOFF_SEC = 30.0


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    CYAN = "\x1b[36m"
    GREY = "\x1b[90m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "DELETE": Ansi.ORANGE,
    "RMDIR": Ansi.ORANGE,
    "RENAME": Ansi.LIGHT_BROWN,
    "QUEUE": Ansi.CYAN,
}

# whole line is dimmed for these
MUTED_ACTIONS = {"IGNORE", "DEBOUNCE", "COALESCE"}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except (AttributeError, ValueError):
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action in MUTED_ACTIONS:
            return f"{Ansi.GREY}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "mimic") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Path, verbose: bool = False) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / _today_log_name()
    level = logging.DEBUG if verbose else logging.INFO

    logger = logging.getLogger("mimic")
    logger.setLevel(level)
    logger.propagate = False

    if logger.handlers:
        return logger

    colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    fh.setLevel(level)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("Logging to: %s", log_path)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
    exc_info: bool = False,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else (path.exists() and path.is_dir())
    logger.log(level, f"{action} | {message}", extra=extra, exc_info=exc_info)


# -------------------------
# Errors
# -------------------------

class ConfigError(ValueError):
    """Raised when the mirror configuration is missing or invalid."""


class AlreadyRunningError(RuntimeError):
    """Raised when another Mimic process holds the instance lock."""


class NotificationOverflow(Exception):
    """The notification layer dropped events because its buffer filled up."""


class WatchRootInaccessible(OSError):
    """The watched root vanished, or its subscription can no longer be read."""


# -------------------------
# Data model
# -------------------------

class ChangeKind(str, Enum):
    CREATED = "created"
    CHANGED = "changed"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass(frozen=True)
class RawChangeEvent:
    """One notification as delivered by the OS layer. ``old_path`` is set for renames only."""

    kind: ChangeKind
    path: Path
    old_path: Optional[Path] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class WatchSpec:
    watch_root: Path
    dest_root: Path
    exclusions: tuple[str, ...] = ()
    ignore_window_sec: float = CHANGE_IGNORE_WINDOW_MS / 1000.0


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class MimicConfig:
    watch_root: Path
    watch_paths: tuple[Path, ...]
    dev_root: Path
    dev_paths: tuple[Path, ...]
    excluded_paths: tuple[str, ...] = ()
    change_ignore_window_ms: int = CHANGE_IGNORE_WINDOW_MS
    log_dir: Path = Path(".")


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Mirror changes from watched folders into destination folders.")
    p.add_argument("--config", type=str, default=DEFAULT_CONFIG_NAME, help="JSON configuration file.")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files (overrides config).")
    p.add_argument(
        "--ignore-window-ms",
        type=int,
        default=None,
        help="Ignore repeated change notifications for unchanged files within this window.",
    )
    p.add_argument("--verbose", action="store_true", help="Also log coalesced, debounced and skipped events.")
    return p.parse_args(argv)


def load_config_file(path: Path) -> dict:
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a JSON object")
    return data


def _split_paths(value, field_name: str, required: bool = True) -> list[str]:
    if value is None:
        items: list[str] = []
    elif isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list) and all(isinstance(v, str) for v in value):
        items = list(value)
    else:
        raise ConfigError(f"{field_name} must be a list of strings or a comma-separated string")

    items = [item.strip() for item in items if item.strip()]
    if required and not items:
        raise ConfigError(f"{field_name} must name at least one path")
    return items


def _root_from(raw: dict, key: str, base: Path) -> Path:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string")
    return Path(os.path.abspath(base / Path(value.strip()).expanduser()))


def load_config(path: Path) -> MimicConfig:
    raw = load_config_file(path)
    base = Path(os.path.abspath(path)).parent

    watch_root = _root_from(raw, "watch_root", base)
    dev_root = _root_from(raw, "dev_root", base)
    watch_paths = tuple(Path(os.path.abspath(watch_root / p)) for p in _split_paths(raw.get("watch_paths"), "watch_paths"))
    dev_paths = tuple(Path(os.path.abspath(dev_root / p)) for p in _split_paths(raw.get("dev_paths"), "dev_paths"))
    excluded = tuple(_split_paths(raw.get("excluded_paths"), "excluded_paths", required=False))

    window = raw.get("change_ignore_window_ms", CHANGE_IGNORE_WINDOW_MS)
    if isinstance(window, bool) or not isinstance(window, int) or window < 0:
        raise ConfigError("change_ignore_window_ms must be a non-negative integer")

    log_dir_raw = raw.get("log_dir", ".")
    if not isinstance(log_dir_raw, str):
        raise ConfigError("log_dir must be a string")

    return MimicConfig(
        watch_root=watch_root,
        watch_paths=watch_paths,
        dev_root=dev_root,
        dev_paths=dev_paths,
        excluded_paths=excluded,
        change_ignore_window_ms=window,
        log_dir=Path(os.path.abspath(base / log_dir_raw)),
    )


def build_effective_config(args: argparse.Namespace) -> MimicConfig:
    cfg = load_config(Path(args.config).expanduser())

    overrides = {}
    if args.log_dir:
        overrides["log_dir"] = Path(args.log_dir).expanduser()
    if args.ignore_window_ms is not None:
        if args.ignore_window_ms < 0:
            raise ConfigError("--ignore-window-ms must not be negative")
        overrides["change_ignore_window_ms"] = args.ignore_window_ms

    return dataclasses.replace(cfg, **overrides) if overrides else cfg


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def validate_config(cfg: MimicConfig) -> None:
    for label, root in (("watch_root", cfg.watch_root), ("dev_root", cfg.dev_root)):
        if not root.is_dir():
            raise ConfigError(f"{label} does not exist or is not a folder: {root}")

    if len(cfg.watch_paths) != len(cfg.dev_paths):
        raise ConfigError(
            "Mismatching path count. For each watch path there should be a corresponding dev (destination) path."
        )

    for path in cfg.watch_paths + cfg.dev_paths:
        if not path.is_dir():
            raise ConfigError(f"Path does not exist or is not a folder: {path}")

    for watch, dev in zip(cfg.watch_paths, cfg.dev_paths):
        if watch.resolve() == dev.resolve():
            raise ConfigError(f"Watch and dev folders must be different: {watch}")
        if _is_subpath(dev, watch):
            raise ConfigError(f"Dev folder must NOT be inside its watch folder (would cause loops): {dev}")
        if _is_subpath(watch, dev):
            raise ConfigError(f"Watch folder must NOT be inside its dev folder (would cause confusion): {watch}")

    for i, first in enumerate(cfg.dev_paths):
        for second in cfg.dev_paths[i + 1:]:
            if _is_subpath(first, second) or _is_subpath(second, first):
                raise ConfigError(f"Dev folders must not overlap: {first} and {second}")


def build_watch_specs(cfg: MimicConfig) -> list[WatchSpec]:
    validate_config(cfg)
    window_sec = cfg.change_ignore_window_ms / 1000.0
    return [
        WatchSpec(watch_root=watch, dest_root=dev, exclusions=cfg.excluded_paths, ignore_window_sec=window_sec)
        for watch, dev in zip(cfg.watch_paths, cfg.dev_paths)
    ]


# -------------------------
# Single instance
# -------------------------

def _lock_file(fd: int) -> None:
    if os.name == "nt":
        import msvcrt

        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_file(fd: int) -> None:
    if os.name == "nt":
        import msvcrt

        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_UN)


class InstanceLock:
    """
    Holds an exclusive OS lock on a small file for the life of the process.
    The OS drops the lock if the process dies, so there is no stale-lock cleanup.
    """

    def __init__(self, path: Path = LOCK_PATH):
        self.path = path
        self._handle: Optional[TextIO] = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        try:
            handle.seek(0)
            _lock_file(handle.fileno())
        except OSError as e:
            handle.close()
            raise AlreadyRunningError(f"Another Mimic instance is already running (lock: {self.path})") from e

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.seek(0)
            _unlock_file(handle.fileno())
        finally:
            handle.close()

    def __enter__(self) -> "InstanceLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


# -------------------------
# Path mapping + exclusion
# -------------------------

def dst_for(watch_root: Path, dest_root: Path, src: Path) -> Path:
    """Map ``src`` under ``watch_root`` onto the same relative location under ``dest_root``."""
    rel = Path(src).relative_to(watch_root)
    return dest_root / rel


class ExclusionMatcher:
    """Case-insensitive gitwildmatch patterns, matched against absolute paths."""

    def __init__(self, patterns: Iterable[str]):
        self._patterns = tuple(patterns)
        self._spec = PathSpec.from_lines("gitwildmatch", [p.lower() for p in self._patterns])

    @property
    def patterns(self) -> tuple[str, ...]:
        return self._patterns

    def is_excluded(self, path: Path) -> bool:
        if not self._patterns:
            return False
        return self._spec.match_file(str(path).lower())


# -------------------------
# Filesystem mutations
# -------------------------

def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def copy_recursive_overwrite(src: Path, dst: Path, skip: Optional[Callable[[Path], bool]] = None) -> None:
    """
    Copy a file, or a folder tree, onto dst, overwriting whatever is there.
    ``skip`` is consulted for every child of a folder; matching children are left out.

    Children that are neither files nor folders (dangling symlinks, sockets) are
    skipped. A child that fails to copy does not stop its siblings; the failures
    are raised together as one ``shutil.Error`` once the folder is done.
    """
    if src.is_file():
        ensure_parent(dst)
        shutil.copy2(src, dst)
        return

    if not src.is_dir():
        raise FileNotFoundError(errno.ENOENT, "Source path does not exist", str(src))

    dst.mkdir(parents=True, exist_ok=True)
    errors: list[tuple[str, str, str]] = []
    for child in src.iterdir():
        if skip is not None and skip(child):
            continue
        target = dst / child.name
        try:
            if child.is_dir():
                copy_recursive_overwrite(child, target, skip)
            elif child.is_file():
                shutil.copy2(child, target)
        except shutil.Error as e:
            errors.extend(e.args[0])
        except OSError as e:
            errors.append((str(child), str(target), str(e)))
    if errors:
        raise shutil.Error(errors)


def delete_path(path: Path) -> bool:
    """Delete a file, or an (empty) directory. Returns False when nothing was there."""
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        path.rmdir()
        return True
    return False


def rename_path(old: Path, new: Path) -> None:
    if not old.exists() and not old.is_symlink():
        raise FileNotFoundError(errno.ENOENT, "Rename source does not exist", str(old))
    if new.is_dir():
        # shutil.move would nest old inside new
        raise FileExistsError(errno.EEXIST, "Rename target is an existing folder", str(new))
    ensure_parent(new)
    shutil.move(str(old), str(new))


# -------------------------
# Event queue
# -------------------------

class EventQueue:
    """
    Unbounded FIFO between watchdog's notification threads and one consumer.
    enqueue never waits on the consumer; dequeue and peek never wait at all.
    """

    def __init__(self) -> None:
        self._items: collections.deque[RawChangeEvent] = collections.deque()
        self._guard = threading.Lock()

    def enqueue(self, event: RawChangeEvent) -> None:
        with self._guard:
            self._items.append(event)

    def try_dequeue(self) -> Optional[RawChangeEvent]:
        with self._guard:
            return self._items.popleft() if self._items else None

    def peek(self) -> Optional[RawChangeEvent]:
        with self._guard:
            return self._items[0] if self._items else None

    def clear(self) -> int:
        with self._guard:
            dropped = len(self._items)
            self._items.clear()
            return dropped

    def __len__(self) -> int:
        return len(self._items)


# -------------------------
# Watchdog subscription
# -------------------------

class QueueingHandler(FileSystemEventHandler):
    """
    Turns watchdog callbacks into RawChangeEvents and queues them unfiltered.
    Runs on the observer thread, so it must do nothing that can block or raise.
    """

    def __init__(self, queue: EventQueue):
        super().__init__()
        self.queue = queue

    def _push(self, kind: ChangeKind, event: FileSystemEvent) -> None:
        # synthetic events are watchdog's guesses about children of moved folders
        if event.is_synthetic:
            return
        if kind is ChangeKind.RENAMED:
            self.queue.enqueue(
                RawChangeEvent(kind, Path(os.fsdecode(event.dest_path)), old_path=Path(os.fsdecode(event.src_path)))
            )
        else:
            self.queue.enqueue(RawChangeEvent(kind, Path(os.fsdecode(event.src_path))))

    def on_created(self, event):
        self._push(ChangeKind.CREATED, event)

    def on_modified(self, event):
        self._push(ChangeKind.CHANGED, event)

    def on_deleted(self, event):
        self._push(ChangeKind.DELETED, event)

    def on_moved(self, event):
        self._push(ChangeKind.RENAMED, event)


class EventSource:
    """
    Owns the watchdog observer for one watched root.

    Failures are reported through report_error() and never stop the process.
    A health thread notices a lost subscription (root removed, emitter died)
    and tries to re-arm it a bounded number of times.
    """

    def __init__(
        self,
        spec: WatchSpec,
        queue: EventQueue,
        logger: logging.Logger,
        *,
        observer_factory: Callable[[], BaseObserver] = Observer,
        health_interval_sec: float = HEALTH_CHECK_SEC,
        rearm_attempts: int = REARM_MAX_ATTEMPTS,
        rearm_backoff_sec: float = REARM_BACKOFF_SEC,
    ):
        self.spec = spec
        self.queue = queue
        self.logger = logger
        self.handler = QueueingHandler(queue)
        self.health_interval_sec = health_interval_sec
        self.rearm_attempts = rearm_attempts
        self.rearm_backoff_sec = rearm_backoff_sec
        self._observer_factory = observer_factory
        self._observer: Optional[BaseObserver] = None
        self._observer_guard = threading.Lock()
        self._monitor: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        observer = self._observer_factory()
        observer.schedule(self.handler, str(self.spec.watch_root), recursive=True)
        observer.start()
        self._observer = observer

        self._monitor = threading.Thread(
            target=self._watch_health, name=f"mimic-health[{self.spec.watch_root.name}]", daemon=True
        )
        self._monitor.start()
        self.logger.info("WATCH: started %s", self.spec.watch_root)

    def stop(self) -> None:
        self._stop_event.set()
        if self._monitor is not None:
            self._monitor.join(timeout=10)
        with self._observer_guard:
            observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join(timeout=10)
            self.logger.info("WATCH: stopped %s", self.spec.watch_root)

    def report_error(self, exc: BaseException) -> None:
        root = self.spec.watch_root
        if isinstance(exc, NotificationOverflow) or getattr(exc, "errno", None) == errno.EOVERFLOW:
            log_action(
                self.logger,
                "OVERFLOW",
                f"Error: notification buffer overflow under {root}; changes in this gap were not delivered | {exc}",
                path=root,
                is_dir=True,
                level=logging.ERROR,
            )
            return
        log_action(
            self.logger,
            "INACCESSIBLE",
            f"Error: watched directory not accessible: {root} | {exc}",
            path=root,
            is_dir=True,
            level=logging.ERROR,
        )

    def is_healthy(self) -> bool:
        if not self.spec.watch_root.is_dir():
            return False
        observer = self._observer
        if observer is None:
            return False
        emitters = observer.emitters
        return bool(emitters) and all(emitter.is_alive() for emitter in emitters)

    def rearm(self) -> bool:
        root = self.spec.watch_root
        for attempt in range(1, self.rearm_attempts + 1):
            if self._stop_event.is_set():
                return False
            try:
                with self._observer_guard:
                    if self._observer is None:
                        return False
                    self._observer.unschedule_all()
                    self._observer.schedule(self.handler, str(root), recursive=True)
            except OSError as e:
                log_action(
                    self.logger,
                    "REARM",
                    f"attempt {attempt}/{self.rearm_attempts} failed for {root} | {e}",
                    path=root,
                    is_dir=True,
                    level=logging.WARNING,
                )
                self._stop_event.wait(self.rearm_backoff_sec)
                continue

            log_action(self.logger, "REARM", f"watching {root} again (attempt {attempt})", path=root, is_dir=True)
            return True

        log_action(
            self.logger,
            "REARM",
            f"Error: giving up on {root} after {self.rearm_attempts} attempts",
            path=root,
            is_dir=True,
            level=logging.ERROR,
        )
        return False

    def _watch_health(self) -> None:
        while not self._stop_event.wait(self.health_interval_sec):
            if self.is_healthy():
                continue
            self.report_error(
                WatchRootInaccessible(errno.ENOENT, "watch subscription lost", str(self.spec.watch_root))
            )
            if not self.rearm():
                return


# -------------------------
# Consumer
# -------------------------

class ChangeDebouncer:
    """
    Remembers (mtime, size) of recently copied files so that the second of a
    pair of back-to-back 'changed' notifications is skipped. Content that did
    change inside the window is never skipped.
    """

    def __init__(self, window_sec: float, clock: Callable[[], float] = time.monotonic):
        self.window_sec = window_sec
        self._clock = clock
        self._seen: dict[Path, tuple[float, int, int]] = {}
        self._last_sweep = clock()

    @staticmethod
    def signature(path: Path) -> Optional[tuple[int, int]]:
        try:
            st = path.stat()
        except OSError:
            return None
        return st.st_mtime_ns, st.st_size

    def remember(self, path: Path, signature: Optional[tuple[int, int]]) -> None:
        if signature is None or self.window_sec <= 0:
            return
        self._seen[path] = (self._clock(), signature[0], signature[1])

    def forget(self, path: Path) -> None:
        self._seen.pop(path, None)

    def is_duplicate(self, path: Path) -> bool:
        if self.window_sec <= 0:
            return False
        now = self._clock()
        self._sweep(now)
        entry = self._seen.get(path)
        if entry is None:
            return False
        seen_at, mtime_ns, size = entry
        if now - seen_at >= self.window_sec:
            return False
        return self.signature(path) == (mtime_ns, size)

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window_sec:
            return
        stale = [p for p, (seen_at, _, _) in self._seen.items() if now - seen_at >= self.window_sec]
        for p in stale:
            del self._seen[p]
        self._last_sweep = now

    def __len__(self) -> int:
        return len(self._seen)


class MirrorWorker(threading.Thread):
    """Single consumer for one watched root: drains its queue and mutates the destination tree."""

    def __init__(
        self,
        spec: WatchSpec,
        queue: EventQueue,
        logger: logging.Logger,
        *,
        idle_interval_sec: float = IDLE_INTERVAL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(daemon=True, name=f"mimic-worker[{spec.watch_root.name}]")
        self.spec = spec
        self.queue = queue
        self.logger = logger
        self.idle_interval_sec = idle_interval_sec
        self.exclusions = ExclusionMatcher(spec.exclusions)
        self.debouncer = ChangeDebouncer(spec.ignore_window_sec, clock=clock)
        self.stop_event = threading.Event()

    def stop(self) -> None:
        self.stop_event.set()

    def run(self) -> None:
        self.logger.info("MIRROR: started %s -> %s", self.spec.watch_root, self.spec.dest_root)
        try:
            while not self.stop_event.is_set():
                if not self.queue:
                    self.stop_event.wait(self.idle_interval_sec)
                    continue
                processed = self.drain()
                if processed:
                    log_action(
                        self.logger,
                        "QUEUE",
                        f"queue drained ({processed} event(s)) for {self.spec.watch_root} @ {dt.datetime.now():%H:%M:%S}",
                        level=logging.INFO,
                    )
        except Exception as e:
            self.logger.exception("MIRROR: consumer loop died for %s | %s", self.spec.watch_root, e)
        finally:
            self.logger.info("MIRROR: stopped %s", self.spec.watch_root)

    def drain(self) -> int:
        processed = 0
        while not self.stop_event.is_set():
            event = self.queue.try_dequeue()
            if event is None:
                break
            self.process(event)
            processed += 1
        return processed

    def process(self, event: RawChangeEvent) -> None:
        try:
            self._dispatch(event)
        except Exception as e:
            log_action(
                self.logger,
                "EVENT",
                f"ERROR ({event.kind.value}) {event.path} | {type(e).__name__}: {e}",
                path=event.path,
                is_dir=False,
                level=logging.ERROR,
                exc_info=True,
            )

    def _dispatch(self, event: RawChangeEvent) -> None:
        if self.exclusions.is_excluded(event.path):
            log_action(self.logger, "IGNORE", f"({event.kind.value}) {event.path}", path=event.path, is_dir=False)
            return

        if event.kind is ChangeKind.RENAMED:
            self._mirror_rename(event)
            return

        upcoming = self.queue.peek()
        if upcoming is not None and upcoming.path == event.path:
            log_action(
                self.logger,
                "COALESCE",
                f"({event.kind.value}) {event.path} superseded by ({upcoming.kind.value})",
                path=event.path,
                is_dir=False,
                level=logging.DEBUG,
            )
            return

        if event.kind is ChangeKind.CHANGED:
            self._mirror_changed(event.path)
        elif event.kind is ChangeKind.CREATED:
            self._mirror_copy(event.path, "created")
        elif event.kind is ChangeKind.DELETED:
            self._mirror_delete(event.path)

    def _dst(self, src: Path) -> Path:
        return dst_for(self.spec.watch_root, self.spec.dest_root, src)

    def _mirror_changed(self, src: Path) -> None:
        # folders report 'changed' whenever a child changes; the child has its own event
        if src.is_dir():
            return
        if self.debouncer.is_duplicate(src):
            log_action(self.logger, "DEBOUNCE", f"(changed) {src}", path=src, is_dir=False, level=logging.DEBUG)
            return
        self._mirror_copy(src, "changed")

    def _mirror_copy(self, src: Path, reason: str) -> None:
        dst = self._dst(src)
        signature = ChangeDebouncer.signature(src)
        try:
            copy_recursive_overwrite(src, dst, self.exclusions.is_excluded)
        except FileNotFoundError as e:
            log_action(
                self.logger,
                "COPY",
                f"SKIP ({reason}) source vanished: {e.filename or src}",
                path=src,
                is_dir=False,
                level=logging.WARNING,
            )
            return
        except shutil.Error as e:
            failures = e.args[0]
            for child_src, child_dst, why in failures:
                log_action(
                    self.logger,
                    "COPY",
                    f"ERROR ({reason}) {child_src} -> {child_dst} | {why}",
                    path=Path(child_dst),
                    is_dir=False,
                    level=logging.ERROR,
                )
            log_action(
                self.logger,
                "COPY",
                f"({reason}) {src} -> {dst} partially, {len(failures)} entr{'y' if len(failures) == 1 else 'ies'} failed",
                path=dst,
                is_dir=True,
                level=logging.WARNING,
            )
            return
        except OSError as e:
            log_action(self.logger, "COPY", f"ERROR ({reason}) {src} -> {dst} | {e}", path=dst, level=logging.ERROR)
            return

        self.debouncer.remember(src, signature)
        log_action(self.logger, "COPY", f"({reason}) {src} -> {dst}", path=dst)

    def _mirror_delete(self, src: Path) -> None:
        dst = self._dst(src)
        self.debouncer.forget(src)
        was_dir = dst.is_dir() and not dst.is_symlink()
        try:
            removed = delete_path(dst)
        except OSError as e:
            log_action(
                self.logger,
                "RMDIR" if was_dir else "DELETE",
                f"ERROR (deleted) {src} -> {dst} | {e}",
                path=dst,
                is_dir=was_dir,
                level=logging.ERROR,
            )
            return

        if removed:
            log_action(self.logger, "RMDIR" if was_dir else "DELETE", f"(deleted) {dst}", path=dst, is_dir=was_dir)
        else:
            log_action(self.logger, "DELETE", f"SKIP (deleted) nothing at {dst}", path=dst, is_dir=False, level=logging.DEBUG)

    def _mirror_rename(self, event: RawChangeEvent) -> None:
        if event.old_path is None:
            self._mirror_copy(event.path, "renamed")
            return

        old_dst = self._dst(event.old_path)
        new_dst = self._dst(event.path)
        self.debouncer.forget(event.old_path)
        try:
            rename_path(old_dst, new_dst)
        except FileNotFoundError as e:
            log_action(
                self.logger,
                "RENAME",
                f"ERROR (renamed) {old_dst} -> {new_dst} | {e}; copying {event.path} instead",
                path=new_dst,
                level=logging.WARNING,
            )
            self._mirror_copy(event.path, "renamed fallback copy")
            return
        except OSError as e:
            log_action(
                self.logger, "RENAME", f"ERROR (renamed) {old_dst} -> {new_dst} | {e}", path=new_dst, level=logging.ERROR
            )
            return

        log_action(self.logger, "RENAME", f"{old_dst} -> {new_dst}", path=new_dst)


# -------------------------
# Supervisor
# -------------------------

SourceFactory = Callable[[WatchSpec, EventQueue, logging.Logger], EventSource]
WorkerFactory = Callable[[WatchSpec, EventQueue, logging.Logger], MirrorWorker]


class MirrorSupervisor:
    """
    Runs one EventSource + MirrorWorker pair per WatchSpec.
    stop() returns only after every worker thread has exited.
    """

    def __init__(
        self,
        specs: Iterable[WatchSpec],
        logger: logging.Logger,
        *,
        source_factory: SourceFactory = EventSource,
        worker_factory: WorkerFactory = MirrorWorker,
    ):
        self.specs = list(specs)
        self.logger = logger
        self._source_factory = source_factory
        self._worker_factory = worker_factory
        self._pairs: list[tuple[EventQueue, MirrorWorker, EventSource]] = []
        self._started = False

    @property
    def workers(self) -> list[MirrorWorker]:
        return [worker for _, worker, _ in self._pairs]

    def start(self) -> None:
        if self._started:
            raise RuntimeError("MirrorSupervisor already started")
        self._started = True

        try:
            for spec in self.specs:
                queue = EventQueue()
                worker = self._worker_factory(spec, queue, self.logger)
                source = self._source_factory(spec, queue, self.logger)
                worker.start()
                self._pairs.append((queue, worker, source))
                source.start()
                self.logger.info("Mapping %s -> %s", spec.watch_root, spec.dest_root)
        except Exception:
            self.logger.error("Could not start all watchers; stopping the ones already running.")
            self.stop()
            raise

    def stop(self) -> None:
        for _, _, source in self._pairs:
            source.stop()
        for _, worker, _ in self._pairs:
            worker.stop()
        for queue, worker, _ in self._pairs:
            worker.join()
            abandoned = queue.clear()
            if abandoned:
                self.logger.warning("MIRROR: abandoned %d pending event(s) for %s", abandoned, worker.spec.watch_root)
        self._pairs.clear()

    def __enter__(self) -> "MirrorSupervisor":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()


# -------------------------
# Main
# -------------------------

def wait_for_quit(stream: Optional[TextIO] = None) -> None:
    stream = stream or sys.stdin
    while True:
        line = stream.readline()
        if not line:
            # stdin closed (e.g. started in the background): run until Ctrl+C
            while True:
                time.sleep(0.5)
        if line.strip().lower() == "q":
            return


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = build_effective_config(args)
        specs = build_watch_specs(cfg)
    except ConfigError as e:
        logger = setup_logger(Path(args.log_dir).expanduser() if args.log_dir else Path("."), verbose=args.verbose)
        logger.error("Config error: %s", e)
        return 2

    logger = setup_logger(cfg.log_dir, verbose=args.verbose)
    for spec in specs:
        logger.info("Watch: %s", spec.watch_root)
        logger.info("Dev  : %s", spec.dest_root)
    if cfg.excluded_paths:
        logger.info("Excluded: %s", ", ".join(cfg.excluded_paths))

    lock = InstanceLock(LOCK_PATH)
    try:
        lock.acquire()
    except AlreadyRunningError as e:
        logger.error("%s", e)
        return 3

    supervisor = MirrorSupervisor(specs, logger)
    try:
        supervisor.start()
        logger.info("Mirroring... enter 'q' to quit (or Ctrl+C)")
        wait_for_quit()
    except KeyboardInterrupt:
        logger.info("Stopping...")
    except OSError as e:
        logger.error("Could not start watching: %s", e)
        return 1
    finally:
        supervisor.stop()
        lock.release()
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
