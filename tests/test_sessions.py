from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest

from agent_relay.errors import SessionExpiredError, SessionNotFoundError
from agent_relay.orchestrator.sessions import SessionStore

pytestmark = [
    allure.epic("Sessions"),
    allure.feature("Session Store"),
]


def test_create_sets_expiry_from_timeout(clock) -> None:
    store = SessionStore(session_timeout_ms=60_000, clock=clock)

    session = store.create("user-1", metadata={"source": "cli"})

    assert session.user_id == "user-1"
    assert session.task_count == 0
    assert session.external_session_id is None
    assert session.created_at == session.last_accessed_at == clock.now
    assert (session.expires_at - session.created_at).total_seconds() == 60
    assert session.metadata == {"source": "cli"}
    assert store.count() == 1


def test_get_refreshes_last_access_without_extending_expiry(clock) -> None:
    store = SessionStore(session_timeout_ms=60_000, clock=clock)
    created = store.create("user-1")
    clock.advance(seconds=30)

    fetched = store.get(created.session_id)

    assert fetched.last_accessed_at == clock.now
    assert fetched.expires_at == created.expires_at


def test_expired_session_is_evicted_then_not_found(clock) -> None:
    store = SessionStore(session_timeout_ms=1_000, clock=clock)
    session = store.create("user-1")
    clock.advance(seconds=2)

    with pytest.raises(SessionExpiredError) as expired:
        store.get(session.session_id)
    with pytest.raises(SessionNotFoundError):
        store.get(session.session_id)

    assert expired.value.expired_at == session.expires_at
    assert store.count() == 0


def test_session_is_still_valid_at_exact_expiry(clock) -> None:
    store = SessionStore(session_timeout_ms=1_000, clock=clock)
    session = store.create("user-1")
    clock.advance(seconds=1)

    assert store.is_valid(session.session_id)
    assert store.get(session.session_id).session_id == session.session_id


def test_update_merges_mutable_fields_and_ignores_identity(clock) -> None:
    store = SessionStore(clock=clock)
    session = store.create("user-1")
    clock.advance(seconds=5)

    updated = store.update(
        session.session_id,
        session_id="hijack",
        user_id="someone-else",
        external_session_id="ext-1",
        task_count=3,
    )

    assert updated.session_id == session.session_id
    assert updated.user_id == "user-1"
    assert updated.created_at == session.created_at
    assert updated.external_session_id == "ext-1"
    assert updated.task_count == 3
    assert updated.last_accessed_at == clock.now


def test_update_rejects_unknown_fields_and_missing_sessions() -> None:
    store = SessionStore()
    session = store.create("user-1")

    with pytest.raises(TypeError):
        store.update(session.session_id, colour="blue")
    with pytest.raises(SessionNotFoundError):
        store.update("missing", task_count=1)


def test_returned_sessions_are_copies() -> None:
    store = SessionStore()
    session = store.create("user-1")

    session.task_count = 99
    session.metadata["leak"] = True

    stored = store.get(session.session_id)
    assert stored.task_count == 0
    assert stored.metadata == {}


def test_delete_removes_and_reports_missing() -> None:
    store = SessionStore()
    session = store.create("user-1")

    store.delete(session.session_id)

    with pytest.raises(SessionNotFoundError):
        store.delete(session.session_id)
    assert not store.is_valid(session.session_id)


def test_sweep_expired_removes_only_expired_sessions(clock) -> None:
    store = SessionStore(session_timeout_ms=10_000, clock=clock)
    old_a = store.create("user-1")
    old_b = store.create("user-2")
    clock.advance(seconds=8)
    fresh = store.create("user-1")
    clock.advance(seconds=5)

    removed = store.sweep_expired()

    assert removed == 2
    assert store.count() == 1
    assert store.is_valid(fresh.session_id)
    assert not store.is_valid(old_a.session_id)
    assert not store.is_valid(old_b.session_id)
    assert store.sweep_expired() == 0


def test_list_by_user_and_count_do_not_touch_sessions(clock) -> None:
    store = SessionStore(clock=clock)
    first = store.create("user-1")
    store.create("user-2")
    store.create("user-1")
    clock.advance(seconds=10)

    mine = store.list_by_user("user-1")

    assert len(mine) == 2
    assert all(session.last_accessed_at == first.created_at for session in mine)
    assert store.list_by_user("nobody") == []
    assert store.count() == 3


def test_concurrent_mutations_are_not_lost() -> None:
    store = SessionStore()
    session = store.create("user-1")
    workers = 8
    rounds = 200

    def _bump() -> None:
        for _ in range(rounds):
            store.mutate(session.session_id, _increment)
            store.increment_task_count(session.session_id)

    threads = [threading.Thread(target=_bump) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get(session.session_id).task_count == workers * rounds * 2


def test_mutate_keeps_identity_and_records_external_id() -> None:
    store = SessionStore()
    session = store.create("user-1")

    def _apply(draft) -> None:
        draft.user_id = "changed"
        draft.external_session_id = "ext-42"

    result = store.mutate(session.session_id, _apply)

    assert result.user_id == "user-1"
    assert result.external_session_id == "ext-42"
    with pytest.raises(SessionNotFoundError):
        store.mutate("missing", _apply)


def test_increment_task_count_ignores_missing_session() -> None:
    store = SessionStore()

    store.increment_task_count("missing")

    assert store.count() == 0


def _increment(session) -> None:
    session.task_count += 1


def test_renew_restarts_expiry_of_lapsed_session(clock) -> None:
    store = SessionStore(session_timeout_ms=1_000, clock=clock)
    session = store.create("user-1")
    clock.advance(seconds=5)
    assert not store.is_valid(session.session_id)

    renewed = store.renew(session.session_id)

    assert renewed.expires_at == clock.now + timedelta(seconds=1)
    assert renewed.last_accessed_at == clock.now
    assert store.is_valid(session.session_id)
    with pytest.raises(SessionNotFoundError):
        store.renew("missing")
