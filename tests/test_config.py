"""Configuration loading, validation and the process-level helpers around it."""

import io
import json
import logging

import pytest

import mimic
from mimic import (
    AlreadyRunningError,
    ColorizingFormatter,
    ConfigError,
    InstanceLock,
    build_effective_config,
    build_watch_specs,
    load_config,
    parse_args,
    wait_for_quit,
)


@pytest.fixture
def layout(tmp_path):
    for rel in ("work/src/app", "work/src/lib", "dev/app", "dev/lib"):
        (tmp_path / rel).mkdir(parents=True)
    return tmp_path


@pytest.fixture
def app_logger():
    log = logging.getLogger("mimic")
    yield log
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()
    log.propagate = True
    log.setLevel(logging.NOTSET)


def write_config(directory, **values):
    data = {
        "watch_root": str(directory / "work" / "src"),
        "watch_paths": ["app", "lib"],
        "dev_root": str(directory / "dev"),
        "dev_paths": ["app", "lib"],
    }
    data.update(values)
    path = directory / "mimic.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


class TestLoadConfig:
    def test_joins_paths_onto_roots(self, layout):
        cfg = load_config(write_config(layout))

        assert cfg.watch_paths == (layout / "work/src/app", layout / "work/src/lib")
        assert cfg.dev_paths == (layout / "dev/app", layout / "dev/lib")
        assert cfg.excluded_paths == ()
        assert cfg.change_ignore_window_ms == 1000

    def test_accepts_comma_separated_paths(self, layout):
        cfg = load_config(write_config(layout, watch_paths="app, lib", dev_paths="app,lib"))

        assert [p.name for p in cfg.watch_paths] == ["app", "lib"]
        assert [p.name for p in cfg.dev_paths] == ["app", "lib"]

    def test_relative_roots_resolve_against_config_folder(self, layout):
        cfg = load_config(write_config(layout, watch_root="work/src", dev_root="dev", log_dir="logs"))

        assert cfg.watch_root == layout / "work" / "src"
        assert cfg.dev_root == layout / "dev"
        assert cfg.log_dir == layout / "logs"

    def test_normalises_dot_segments(self, layout):
        cfg = load_config(write_config(layout, watch_paths=["app/../lib", "app"], dev_paths=["lib", "app"]))

        assert cfg.watch_paths[0] == layout / "work/src/lib"

    def test_reads_exclusions_and_window(self, layout):
        cfg = load_config(
            write_config(layout, excluded_paths=["**/node_modules/**", "*.tmp"], change_ignore_window_ms=250)
        )

        assert cfg.excluded_paths == ("**/node_modules/**", "*.tmp")
        assert cfg.change_ignore_window_ms == 250

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "mimic.json"
        path.write_text("{ not json", encoding="utf-8")

        with pytest.raises(ConfigError, match="Could not parse"):
            load_config(path)

    def test_root_must_be_object(self, tmp_path):
        path = tmp_path / "mimic.json"
        path.write_text("[]", encoding="utf-8")

        with pytest.raises(ConfigError, match="JSON object"):
            load_config(path)

    @pytest.mark.parametrize(
        "values, message",
        [
            ({"watch_root": ""}, "watch_root"),
            ({"dev_root": 5}, "dev_root"),
            ({"watch_paths": []}, "watch_paths"),
            ({"dev_paths": [1, 2]}, "dev_paths"),
            ({"excluded_paths": {"a": 1}}, "excluded_paths"),
            ({"change_ignore_window_ms": -1}, "change_ignore_window_ms"),
            ({"change_ignore_window_ms": True}, "change_ignore_window_ms"),
            ({"log_dir": 3}, "log_dir"),
        ],
    )
    def test_rejects_bad_values(self, layout, values, message):
        with pytest.raises(ConfigError, match=message):
            load_config(write_config(layout, **values))


class TestBuildWatchSpecs:
    def test_one_spec_per_pair(self, layout):
        cfg = load_config(write_config(layout, excluded_paths=["*.tmp"], change_ignore_window_ms=1500))

        specs = build_watch_specs(cfg)

        assert [(s.watch_root.name, s.dest_root.name) for s in specs] == [("app", "app"), ("lib", "lib")]
        assert all(s.exclusions == ("*.tmp",) for s in specs)
        assert all(s.ignore_window_sec == 1.5 for s in specs)

    def test_count_mismatch(self, layout):
        cfg = load_config(write_config(layout, dev_paths=["app"]))

        with pytest.raises(ConfigError, match="Mismatching path count"):
            build_watch_specs(cfg)

    def test_missing_watch_path(self, layout):
        cfg = load_config(write_config(layout, watch_paths=["app", "missing"]))

        with pytest.raises(ConfigError, match="missing"):
            build_watch_specs(cfg)

    def test_missing_dev_root(self, layout):
        cfg = load_config(write_config(layout, dev_root=str(layout / "nowhere")))

        with pytest.raises(ConfigError, match="dev_root"):
            build_watch_specs(cfg)

    def test_dev_inside_watch_is_rejected(self, layout):
        (layout / "work/src/app/out").mkdir()
        cfg = load_config(
            write_config(layout, dev_root=str(layout / "work/src/app"), dev_paths=["out", "out"], watch_paths=["app", "lib"])
        )

        with pytest.raises(ConfigError, match="inside"):
            build_watch_specs(cfg)

    def test_overlapping_dev_paths_are_rejected(self, layout):
        (layout / "dev/app/nested").mkdir()
        cfg = load_config(write_config(layout, dev_paths=["app", "app/nested"]))

        with pytest.raises(ConfigError, match="overlap"):
            build_watch_specs(cfg)


class TestCommandLine:
    def test_defaults(self):
        args = parse_args([])

        assert args.config == "mimic.json"
        assert args.log_dir is None
        assert args.ignore_window_ms is None
        assert args.verbose is False

    def test_overrides_win_over_file(self, layout):
        path = write_config(layout, change_ignore_window_ms=1000, log_dir="logs")
        args = parse_args(["--config", str(path), "--log-dir", str(layout / "elsewhere"), "--ignore-window-ms", "0"])

        cfg = build_effective_config(args)

        assert cfg.log_dir == layout / "elsewhere"
        assert cfg.change_ignore_window_ms == 0

    def test_negative_window_override(self, layout):
        args = parse_args(["--config", str(write_config(layout)), "--ignore-window-ms", "-5"])

        with pytest.raises(ConfigError):
            build_effective_config(args)

    def test_main_exits_2_on_config_error(self, tmp_path, app_logger):
        code = mimic.main(["--config", str(tmp_path / "absent.json"), "--log-dir", str(tmp_path / "logs")])

        assert code == 2
        (log_file,) = (tmp_path / "logs").glob("mimic_*.log")
        assert "Config error" in log_file.read_text(encoding="utf-8")

    def test_main_exits_3_when_another_instance_runs(self, layout, tmp_path, app_logger, monkeypatch):
        lock_path = tmp_path / "held.lock"
        monkeypatch.setattr(mimic, "LOCK_PATH", lock_path)
        config = write_config(layout, log_dir=str(tmp_path / "logs"))

        with InstanceLock(lock_path):
            code = mimic.main(["--config", str(config)])

        assert code == 3


class TestLogging:
    def test_log_file_is_plain_text(self, tmp_path, app_logger):
        log = mimic.setup_logger(tmp_path / "logs", verbose=True)
        mimic.log_action(log, "COPY", "(created) a -> b", path=tmp_path, is_dir=True)
        for handler in log.handlers:
            handler.flush()

        (log_file,) = (tmp_path / "logs").glob("mimic_*.log")
        text = log_file.read_text(encoding="utf-8")
        assert "COPY | (created) a -> b" in text
        assert "\x1b[" not in text
        assert log.level == logging.DEBUG

    def test_setup_is_idempotent(self, tmp_path, app_logger):
        first = mimic.setup_logger(tmp_path)
        second = mimic.setup_logger(tmp_path)

        assert first is second
        assert len(second.handlers) == 2


class TestInstanceLock:
    def test_second_holder_is_refused(self, tmp_path):
        lock_path = tmp_path / "mimic.lock"
        first = InstanceLock(lock_path)
        first.acquire()
        try:
            with pytest.raises(AlreadyRunningError):
                InstanceLock(lock_path).acquire()
        finally:
            first.release()

    def test_lock_is_reusable_after_release(self, tmp_path):
        lock_path = tmp_path / "nested" / "mimic.lock"
        with InstanceLock(lock_path):
            assert lock_path.read_text(encoding="utf-8").strip().isdigit()

        with InstanceLock(lock_path):
            pass

    def test_release_without_acquire_is_harmless(self, tmp_path):
        InstanceLock(tmp_path / "mimic.lock").release()


class TestConsole:
    def test_wait_for_quit_returns_on_q(self):
        stream = io.StringIO("hello\n\nQ\nnever read\n")

        wait_for_quit(stream)

        assert stream.readline() == "never read\n"

    def test_formatter_colors_action_and_errors(self):
        formatter = ColorizingFormatter(use_color=True, fmt="%(message)s")

        ok = logging.LogRecord("mimic", logging.INFO, __file__, 1, "COPY | a -> b", None, None)
        ok.action = "COPY"
        bad = logging.LogRecord("mimic", logging.ERROR, __file__, 1, "COPY | ERROR a -> b", None, None)

        assert "\x1b[32mCOPY\x1b[0m" in formatter.format(ok)
        assert formatter.format(bad).startswith("\x1b[31m")

    def test_formatter_without_color_is_plain(self):
        formatter = ColorizingFormatter(use_color=False, fmt="%(message)s")
        record = logging.LogRecord("mimic", logging.INFO, __file__, 1, "COPY | a", None, None)
        record.action = "COPY"

        assert formatter.format(record) == "COPY | a"
