# tests/test_run_lock.py
import json
import os
import time

import pytest

from freebie_notifier.utils.run_lock import LockBusyError, LockLostError, RunLock


def test_acquire_and_release(tmp_path):
    path = tmp_path / "run.lock"
    with RunLock(path) as lock:
        assert lock.held
        assert path.exists()
        assert json.loads(path.read_text())["pid"] == os.getpid()
    assert not path.exists()
    assert not lock.held


def test_second_holder_is_refused(tmp_path):
    path = tmp_path / "run.lock"
    with RunLock(path):
        with pytest.raises(LockBusyError) as exc_info:
            RunLock(path).acquire()
    assert exc_info.value.owner["pid"] == os.getpid()


def test_stale_lock_is_reclaimed(tmp_path):
    path = tmp_path / "run.lock"
    path.write_text(json.dumps({"pid": 999999, "token": "dead"}))
    old = time.time() - 3600
    os.utime(path, (old, old))

    lock = RunLock(path, stale_after_seconds=900)
    lock.acquire()

    assert lock.held
    assert json.loads(path.read_text())["token"] != "dead"
    lock.release()


def test_release_leaves_foreign_lock_alone(tmp_path):
    path = tmp_path / "run.lock"
    lock = RunLock(path)
    lock.acquire()
    path.write_text(json.dumps({"pid": 1, "token": "someone-else"}))

    lock.release()

    assert path.exists()


def test_lock_released_on_exception(tmp_path):
    path = tmp_path / "run.lock"
    with pytest.raises(RuntimeError):
        with RunLock(path):
            raise RuntimeError("boom")
    assert not path.exists()


def test_missing_parent_directory_is_created(tmp_path):
    path = tmp_path / "nested" / "dir" / "run.lock"
    with RunLock(path):
        assert path.exists()


def test_refresh_keeps_a_slow_run_fresh(tmp_path):
    path = tmp_path / "run.lock"
    lock = RunLock(path, stale_after_seconds=60)
    lock.acquire()
    old = time.time() - 3600
    os.utime(path, (old, old))

    lock.refresh()

    with pytest.raises(LockBusyError):
        RunLock(path, stale_after_seconds=60).acquire()
    assert lock.held
    lock.release()


def test_refresh_after_takeover_raises(tmp_path):
    path = tmp_path / "run.lock"
    lock = RunLock(path, stale_after_seconds=60)
    lock.acquire()
    old = time.time() - 3600
    os.utime(path, (old, old))

    other = RunLock(path, stale_after_seconds=60)
    other.acquire()

    with pytest.raises(LockLostError):
        lock.refresh()
    assert not lock.held

    lock.release()
    assert path.exists()
    other.refresh()
    other.release()
    assert not path.exists()


def test_refresh_after_lock_file_removed_raises(tmp_path):
    path = tmp_path / "run.lock"
    lock = RunLock(path)
    lock.acquire()
    path.unlink()

    with pytest.raises(LockLostError):
        lock.refresh()


def test_reclaim_leaves_no_leftovers(tmp_path):
    path = tmp_path / "run.lock"
    path.write_text(json.dumps({"pid": 999999, "token": "dead"}))
    old = time.time() - 3600
    os.utime(path, (old, old))

    with RunLock(path, stale_after_seconds=900):
        assert list(tmp_path.glob("*.stale")) == []
    assert list(tmp_path.iterdir()) == []


def test_reclaim_puts_back_a_lock_recreated_meanwhile(tmp_path):
    path = tmp_path / "run.lock"
    path.write_text(json.dumps({"pid": 2, "token": "fresh"}))

    lock = RunLock(path)
    assert lock._discard_stale({"pid": 1, "token": "dead"}) is False

    assert json.loads(path.read_text())["token"] == "fresh"
    assert list(tmp_path.glob("*.stale")) == []


def test_unwritable_lock_directory_raises_oserror(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    with pytest.raises(OSError):
        RunLock(blocker / "run.lock").acquire()
