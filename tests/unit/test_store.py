import threading

import pytest

from em_server.app.errors import ResourceExists, ResourceNotFound
from em_server.app.models import ResourceKind, ResourceRecord, ResourceState
from em_server.app.resources.store import InMemoryResourceStore


def _record(rid: str = "r1", **kw) -> ResourceRecord:
    return ResourceRecord(id=rid, kind=ResourceKind.workspace, **kw)


@pytest.mark.unit
def test_add_get_and_duplicate():
    store = InMemoryResourceStore()
    store.add(_record())
    assert store.get("r1").status is ResourceState.STOPPED
    with pytest.raises(ResourceExists):
        store.add(_record())
    with pytest.raises(ResourceNotFound) as ei:
        store.get("nope")
    assert ei.value.status_code == 404
    assert store.find("nope") is None


@pytest.mark.unit
def test_returned_records_are_copies():
    store = InMemoryResourceStore([_record(params={"a": "1"})])
    rec = store.get("r1")
    rec.params["a"] = "changed"
    assert store.get("r1").params == {"a": "1"}


@pytest.mark.unit
def test_update_rejects_status():
    store = InMemoryResourceStore([_record()])
    with pytest.raises(ValueError):
        store.update("r1", status=ResourceState.RUNNING)
    assert store.update("r1", container_ref="abc").container_ref == "abc"


@pytest.mark.unit
def test_transition_is_compare_and_set():
    store = InMemoryResourceStore([_record()])
    moved = store.transition("r1", expected=(ResourceState.STOPPED,), target=ResourceState.STARTING, session_id="s1")
    assert moved is not None and moved.status is ResourceState.STARTING
    assert store.transition("r1", expected=(ResourceState.STOPPED,), target=ResourceState.STARTING) is None
    assert store.transition("missing", expected=(ResourceState.STOPPED,), target=ResourceState.STARTING) is None


@pytest.mark.unit
def test_transition_session_guard_discards_stale_writer():
    store = InMemoryResourceStore([_record(status=ResourceState.STARTING, session_id="new")])
    stale = store.transition(
        "r1", expected=(ResourceState.STARTING,), target=ResourceState.ERROR, expect_session="old"
    )
    assert stale is None
    assert store.get("r1").status is ResourceState.STARTING
    fresh = store.transition(
        "r1", expected=(ResourceState.STARTING,), target=ResourceState.RUNNING, expect_session="new"
    )
    assert fresh.status is ResourceState.RUNNING


@pytest.mark.unit
def test_only_one_concurrent_transition_wins():
    store = InMemoryResourceStore([_record()])
    wins = []
    barrier = threading.Barrier(8)

    def worker(i: int) -> None:
        barrier.wait()
        if store.transition("r1", expected=(ResourceState.STOPPED,), target=ResourceState.STARTING, session_id=str(i)):
            wins.append(i)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(wins) == 1
    assert store.get("r1").session_id == str(wins[0])


@pytest.mark.unit
def test_delete_and_list():
    store = InMemoryResourceStore([_record("a"), _record("b")])
    assert sorted(r.id for r in store.list()) == ["a", "b"]
    assert store.delete("a") is True
    assert store.delete("a") is False
    assert [r.id for r in store.list()] == ["b"]
