import logging
import threading

import pytest

from grpcdeck.domain import STATUS_ERROR, Endpoint, StreamType, Workspace
from grpcdeck.errors import StorageIOError, ValidationError, WorkspaceExistsError
from grpcdeck.history import HistoryController, now_rfc3339
from grpcdeck.state import AppState, Binding, InlineDispatcher, QueueDispatcher
from grpcdeck.storage import MemoryRepository
from grpcdeck.workspace import WorkspaceController

EP = Endpoint("localhost:50051")


@pytest.fixture
def history():
    return HistoryController(MemoryRepository())


@pytest.fixture
def workspaces():
    return WorkspaceController(MemoryRepository())


# ── state ────────────────────────────────────────────────────────────────────

def test_binding_notifies_only_on_change():
    seen = []
    b = Binding(InlineDispatcher(), "")
    unsubscribe = b.subscribe(seen.append)
    b.set("a")
    b.set("a")
    b.set("b")
    unsubscribe()
    b.set("c")
    assert seen == ["a", "b"]
    assert b.get() == "c"


def test_failing_listener_does_not_block_others():
    seen = []
    b = Binding(InlineDispatcher(), 0)
    b.subscribe(lambda v: 1 / 0)
    b.subscribe(seen.append)
    b.set(1)
    assert seen == [1]


def test_queue_dispatcher_preserves_order():
    dispatcher = QueueDispatcher()
    try:
        state = AppState(dispatcher)
        seen  = []
        state.status_message.subscribe(lambda v: seen.append((v, threading.current_thread().name)))
        for i in range(20):
            state.status_message.set(f"m{i}")
        assert dispatcher.flush(2.0)
        assert [v for v, _ in seen] == [f"m{i}" for i in range(20)]
        assert {name for _, name in seen} == {"grpcdeck-state"}
    finally:
        dispatcher.close()


def test_batch_runs_nested_writes_on_worker():
    dispatcher = QueueDispatcher()
    try:
        state = AppState(dispatcher)

        def _write():
            state.selected_service.set("svc")
            state.selected_method.set("M")
        state.batch(_write)
        assert dispatcher.flush(2.0)
        assert (state.selected_service.get(), state.selected_method.get()) == ("svc", "M")
    finally:
        dispatcher.close()


# ── history ──────────────────────────────────────────────────────────────────

def test_now_rfc3339_is_utc_millis():
    stamp = now_rfc3339()
    assert stamp.endswith("Z")
    assert len(stamp.split(".")[-1]) == 4


def test_record_pushes_to_front(history):
    history.record(EP, "helloworld.Greeter/SayHello", '{"name": "a"}', '{"message": "Hello a"}', 3.0)
    history.record(EP, "demo.Streamer/Fail", "{}", error="INVALID_ARGUMENT: bad count")

    entries = history.entries()
    assert [e.method for e in entries] == ["demo.Streamer/Fail", "helloworld.Greeter/SayHello"]
    assert entries[0].status == STATUS_ERROR
    assert int(entries[0].id) > int(entries[1].id)


def test_ids_increase_within_one_clock_tick(history):
    ids = [int(history.record(EP, "a.S/M", "{}").id) for _ in range(50)]
    assert ids == sorted(set(ids))


def test_timestamps_hold_when_clock_steps_back(monkeypatch):
    clock = [2_000_000_000_000_000_000]
    monkeypatch.setattr("grpcdeck.history.time.time_ns", lambda: clock[0])
    repo    = MemoryRepository()
    history = HistoryController(repo)

    first = history.record(EP, "a.S/M", "{}")
    assert first.timestamp == "2033-05-18T03:33:20.000Z"

    clock[0] = 1_000_000_000_000_000_000
    second = history.record(EP, "a.S/M", "{}")
    assert int(second.id) > int(first.id)
    assert second.timestamp >= first.timestamp

    # a fresh controller over the same store keeps the floor
    third = HistoryController(repo).record(EP, "a.S/M", "{}")
    assert int(third.id) > int(second.id)
    assert third.timestamp >= second.timestamp


def test_record_survives_storage_failure(caplog, monkeypatch):
    monkeypatch.setattr(logging.getLogger("grpcdeck"), "propagate", True)

    class BrokenRepo(MemoryRepository):
        def add_history(self, record):
            raise StorageIOError("disk full")

    entry = HistoryController(BrokenRepo()).record(EP, "a.S/M", "{}")
    assert entry.method == "a.S/M"
    assert "history not saved" in caplog.text


def test_filter(history):
    history.record(EP, "helloworld.Greeter/SayHello", '{"name": "Ada"}')
    history.record(EP, "demo.Streamer/Fail", "{}", error="bad count")
    history.record(EP, "demo.Streamer/Count", '{"count": 3}',
                   stream_type=StreamType.SERVER_STREAM, message_count=3)

    assert [e.method for e in history.filter("ada")] == ["helloworld.Greeter/SayHello"]
    assert [e.method for e in history.filter("BAD")] == ["demo.Streamer/Fail"]
    assert [e.method for e in history.filter(status=STATUS_ERROR)] == ["demo.Streamer/Fail"]
    assert len(history.filter("streamer", status="success")) == 1


def test_get_and_delete(history):
    entry = history.record(EP, "a.S/M", "{}")
    assert history.get(entry.id) == entry
    history.delete(entry.id)
    with pytest.raises(ValidationError):
        history.get(entry.id)


def test_apply_sets_request_without_sending(history):
    state = AppState()
    state.response.text.set("stale")
    entry = history.record(EP, "helloworld.Greeter/SayHello", '{"name": "b"}',
                           request_metadata=(("x-k", "v"),))
    HistoryController.apply(entry, state)
    assert state.selected_service.get() == "helloworld.Greeter"
    assert state.selected_method.get() == "SayHello"
    assert state.request.text.get() == '{"name": "b"}'
    assert state.request.metadata.get() == (("x-k", "v"),)
    assert state.response.text.get() == ""


# ── workspaces ───────────────────────────────────────────────────────────────

def _populated_state():
    state = AppState()
    state.selected_service.set("helloworld.Greeter")
    state.selected_method.set("SayHello")
    state.request.text.set('{"name": "c"}')
    state.request.metadata.set((("authorization", "Bearer t"),))
    return state


def test_capture(workspaces):
    ws = WorkspaceController.capture("dev", _populated_state(), EP)
    assert ws.endpoint == EP
    assert ws.request.method == "helloworld.Greeter/SayHello"
    assert ws.request.body == '{"name": "c"}'
    assert ws.request.metadata == (("authorization", "Bearer t"),)


def test_capture_without_selection_has_no_method():
    ws = WorkspaceController.capture("empty", AppState(), None)
    assert ws.request.method == ""
    assert ws.endpoint is None


def test_save_conflict_and_overwrite(workspaces):
    ws = WorkspaceController.capture("dev", _populated_state(), EP)
    workspaces.save(ws)
    with pytest.raises(WorkspaceExistsError):
        workspaces.save(Workspace(name="dev"))
    assert workspaces.load("dev") == ws

    workspaces.save(Workspace(name="dev"), overwrite=True)
    assert workspaces.load("dev") == Workspace(name="dev")


def test_save_validates_name(workspaces):
    with pytest.raises(ValidationError):
        workspaces.save(Workspace(name="../escape"))


def test_list_and_delete(workspaces):
    workspaces.save(Workspace(name="b"))
    workspaces.save(Workspace(name="a"))
    assert workspaces.list() == ["a", "b"]
    workspaces.delete("a")
    assert workspaces.list() == ["b"]
    assert not workspaces.exists("a")


def test_apply_workspace(workspaces):
    ws    = WorkspaceController.capture("dev", _populated_state(), EP)
    state = AppState()
    WorkspaceController.apply(ws, state)
    assert state.selected_method.get() == "SayHello"
    assert state.request.text.get() == '{"name": "c"}'
    assert state.request.metadata.get() == (("authorization", "Bearer t"),)
