from __future__ import annotations

import os

import pytest

from depositwatch.services.process_lock import RunLockedError, get_lock_diagnostics, single_instance_lock


def test_second_lock_on_same_db_is_refused(tmp_path) -> None:
    db_path = str(tmp_path / "state.sqlite")

    with single_instance_lock(db_path=db_path) as lock:
        assert lock.pid == os.getpid()
        diagnostics = get_lock_diagnostics(db_path=db_path)
        assert diagnostics.owner_pid == os.getpid()
        assert diagnostics.owner_pid_alive is True
        with pytest.raises(RunLockedError, match="^LOCKED:"):
            with single_instance_lock(db_path=db_path):
                pass

    assert get_lock_diagnostics(db_path=db_path).owner_pid is None


def test_lock_is_reusable_after_release(tmp_path) -> None:
    db_path = str(tmp_path / "state.sqlite")

    with single_instance_lock(db_path=db_path):
        pass
    with single_instance_lock(db_path=db_path) as lock:
        assert os.path.exists(lock.path)


def test_different_databases_do_not_contend(tmp_path) -> None:
    with single_instance_lock(db_path=str(tmp_path / "a.sqlite")):
        with single_instance_lock(db_path=str(tmp_path / "b.sqlite")):
            pass
