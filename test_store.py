import datetime
import threading
import types

import pytest

from loc_sweeper.errors import ConstraintViolation, StoreUnavailable
from loc_sweeper.models import LanguageMetric, Project
from loc_sweeper.store import SnapshotStore, db_path_from_url
from conftest import T0


@pytest.fixture
def project_id(store):
    return store.ensure_project(Project("acme", "widget", title="Widget"))


def test_db_path_from_url():
    assert db_path_from_url("stats.db") == "stats.db"
    assert db_path_from_url("sqlite:///stats.db") == "stats.db"
    assert db_path_from_url("sqlite:////var/lib/s.db") == "/var/lib/s.db"
    with pytest.raises(ValueError):
        db_path_from_url("postgresql://u:p@host/db")
    with pytest.raises(ValueError):
        db_path_from_url(":memory:")


def test_init_db_is_idempotent(store):
    store.init_db()
    store.init_db()
    assert store.all_projects() == []


def test_project_registry(store):
    first = store.upsert_project(Project("acme", "widget", title="Widget", ignored_langs="Lua"))
    assert first.id is not None
    again = store.upsert_project(Project("acme", "widget", title="Widget 2"))
    assert again.id == first.id
    assert again.title == "Widget 2"
    assert again.ignored_langs is None

    assert store.ensure_project(Project("acme", "widget", title="ignored")) == first.id
    assert store.get_project("acme", "widget").title == "Widget 2"
    assert store.get_project("acme", "nope") is None

    store.upsert_project(Project("aaa", "zzz"))
    assert [p.slug for p in store.all_projects()] == ["aaa/zzz", "acme/widget"]


def test_put_scenario_a(store, project_id, scenario_a_breakdown):
    from loc_sweeper.models import StatSnapshot
    snap = StatSnapshot.create(project_id, "abc123", scenario_a_breakdown, T0)
    sid = store.put(snap)
    stored = store.get(sid)
    assert stored.id == sid
    assert stored.commit_hash == "abc123"
    assert [m.language for m in stored.metrics] == ["Rust", "Shell"]
    assert (stored.totals.code, stored.totals.comment, stored.totals.blank) == (515, 10, 21)
    assert store.get_project("acme", "widget").last_snapshot_id == sid


def test_put_same_commit_is_idempotent(store, project_id, make_snapshot):
    first = store.put(make_snapshot([LanguageMetric("Rust", code=5)], project_id=project_id))
    later = T0 + datetime.timedelta(hours=1)
    second = store.put(make_snapshot([LanguageMetric("Rust", code=5)], project_id=project_id,
                                     captured_at=later))
    assert first == second
    assert store.count(project_id) == 1
    assert store.get(first).captured_at == T0


def test_latest_and_list_order(store, project_id, make_snapshot):
    ids = []
    for i, commit in enumerate(["c1", "c2", "c3"]):
        ids.append(store.put(make_snapshot(
            [LanguageMetric("Go", code=10 * (i + 1))],
            project_id=project_id,
            commit_hash=commit,
            captured_at=T0 + datetime.timedelta(days=i),
        )))
    assert store.latest(project_id).commit_hash == "c3"

    history = store.list(project_id)
    assert isinstance(history, types.GeneratorType)
    assert next(history).id == ids[2]
    assert [s.commit_hash for s in store.list(project_id)] == ["c3", "c2", "c1"]


def test_latest_of_unknown_project(store):
    assert store.latest(12345) is None
    assert list(store.list(12345)) == []


def test_every_stored_snapshot_satisfies_invariants(store, project_id, make_snapshot):
    store.put(make_snapshot([LanguageMetric("B", code=1, blank=2), LanguageMetric("A", code=7, comment=1)],
                            project_id=project_id))
    for snap in store.list(project_id):
        codes = [m.code for m in snap.metrics]
        assert codes == sorted(codes, reverse=True)
        assert snap.totals.code == sum(codes)
        assert snap.totals.blank == sum(m.blank for m in snap.metrics)


def test_put_for_unknown_project_is_constraint_violation(store, make_snapshot):
    with pytest.raises(ConstraintViolation):
        store.put(make_snapshot([LanguageMetric("Go", code=1)], project_id=999))


def test_concurrent_puts_store_one_row(store, project_id, make_snapshot):
    results = []
    errors = []

    def worker(i):
        try:
            snap = make_snapshot([LanguageMetric("Rust", code=5)], project_id=project_id,
                                 captured_at=T0 + datetime.timedelta(seconds=i))
            results.append(store.put(snap))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(set(results)) == 1
    assert store.count(project_id) == 1


def test_unreachable_store(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    s = SnapshotStore(blocker / "stats.db")
    with pytest.raises(StoreUnavailable):
        s.init_db()
    with pytest.raises(StoreUnavailable):
        s.latest(1)
