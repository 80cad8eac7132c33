# tests/test_task_registry.py

from __future__ import annotations

import random
import re

import pytest

from ai_toolbox.tasks.task_models import Task, TaskStatus, format_duration
from ai_toolbox.tasks.task_registry import TaskRegistry, new_task_id

from .fakes import TaskEvents


class TickClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


def test_new_task_id_format() -> None:
    tid = new_task_id(now=1.5)
    assert re.fullmatch(r"task-1500-[a-z0-9]{9}", tid)


def test_add_task_forces_pending_and_notifies_once(registry: TaskRegistry) -> None:
    events = TaskEvents()
    registry.subscribe(events)

    tid = registry.add_task(type="image", title="Upscale", status="running", progress=40)

    task = registry.get_task(tid)
    assert task is not None
    assert task.status == TaskStatus.PENDING
    assert task.progress == 40
    assert task.created_at > 0
    assert task.updated_at is None
    assert len(events.snapshots) == 1
    assert [t.id for t in events.snapshots[0]] == [tid]


def test_add_task_accepts_explicit_id_and_aliases(registry: TaskRegistry) -> None:
    tid = registry.add_task({"id": "t-1", "tabId": "tab-a", "model": "flux"})
    task = registry.get_task("t-1")

    assert tid == "t-1"
    assert task is not None
    assert task.tab_id == "tab-a"
    assert task.extra == {"model": "flux"}
    assert task.to_dict()["tabId"] == "tab-a"
    assert task.to_dict()["model"] == "flux"


def test_update_task_merges_patches_cumulatively() -> None:
    registry = TaskRegistry(clock=TickClock())
    tid = registry.add_task(type="image", title="A")

    registry.update_task(tid, {"status": "running", "progress": 10})
    registry.update_task(tid, progress=50)
    registry.update_task(tid, {"resultUrl": "https://x/y.png", "seed": 7})

    task = registry.get_task(tid)
    assert task is not None
    assert task.status == TaskStatus.RUNNING
    assert task.progress == 50
    assert task.result_url == "https://x/y.png"
    assert task.title == "A"
    assert task.extra == {"seed": 7}
    assert task.updated_at is not None and task.updated_at > task.created_at


def test_update_task_cannot_change_id(registry: TaskRegistry) -> None:
    tid = registry.add_task(title="A")
    registry.update_task(tid, id="other", title="B")

    assert registry.get_task("other") is None
    task = registry.get_task(tid)
    assert task is not None and task.id == tid and task.title == "B"


def test_update_unknown_id_is_silent_noop(registry: TaskRegistry) -> None:
    events = TaskEvents()
    registry.subscribe(events)

    registry.update_task("missing", progress=10)

    assert events.snapshots == []
    assert registry.count_tasks() == 0


def test_remove_task_notifies_and_unknown_does_not(registry: TaskRegistry) -> None:
    tid = registry.add_task(title="A")
    events = TaskEvents()
    registry.subscribe(events)

    registry.remove_task("missing")
    assert events.snapshots == []

    registry.remove_task(tid)
    assert registry.get_task(tid) is None
    assert events.snapshots == [[]]


def test_subscribers_see_every_mutation_in_order(registry: TaskRegistry) -> None:
    events = TaskEvents()
    registry.subscribe(events)

    tid = registry.add_task(title="A")
    registry.update_task(tid, status="running")
    registry.update_task(tid, progress=30)
    registry.update_task(tid, status="completed", progress=100)

    statuses = [t.status for t in events.history_of(tid)]
    assert statuses == [
        TaskStatus.PENDING,
        TaskStatus.RUNNING,
        TaskStatus.RUNNING,
        TaskStatus.COMPLETED,
    ]
    assert [t.progress for t in events.history_of(tid)] == [0, 0, 30, 100]


def test_unsubscribe_stops_notifications_and_is_idempotent(registry: TaskRegistry) -> None:
    events = TaskEvents()
    other = TaskEvents()
    unsubscribe = registry.subscribe(events)
    registry.subscribe(other)

    registry.add_task(title="A")
    unsubscribe()
    unsubscribe()
    registry.add_task(title="B")

    assert len(events.snapshots) == 1
    assert len(other.snapshots) == 2


def test_listener_may_unsubscribe_during_notification(registry: TaskRegistry) -> None:
    seen: list[int] = []
    unsubscribe = None

    def once(tasks: list[Task]) -> None:
        seen.append(len(tasks))
        assert unsubscribe is not None
        unsubscribe()

    unsubscribe = registry.subscribe(once)
    later = TaskEvents()
    registry.subscribe(later)

    registry.add_task(title="A")
    registry.add_task(title="B")

    assert seen == [1]
    assert len(later.snapshots) == 2


def test_failing_listener_does_not_block_others(registry: TaskRegistry) -> None:
    def broken(tasks: list[Task]) -> None:
        raise RuntimeError("boom")

    events = TaskEvents()
    registry.subscribe(broken)
    registry.subscribe(events)

    tid = registry.add_task(title="A")

    assert registry.get_task(tid) is not None
    assert len(events.snapshots) == 1


def test_list_tasks_newest_first() -> None:
    registry = TaskRegistry(clock=TickClock())
    first = registry.add_task(title="first")
    second = registry.add_task(title="second")

    assert [t.id for t in registry.list_tasks()] == [second, first]
    assert [t.id for t in registry.list_tasks(newest_first=False)] == [first, second]


def test_random_operations_match_a_simple_model() -> None:
    rng = random.Random(1234)
    registry = TaskRegistry()
    model: dict[str, dict] = {}

    for step in range(300):
        op = rng.choice(["add", "update", "remove", "update_missing"])
        if op == "add" or not model:
            tid = registry.add_task(title=f"t{step}")
            model[tid] = {"title": f"t{step}", "progress": 0, "status": TaskStatus.PENDING}
        elif op == "update":
            tid = rng.choice(sorted(model))
            progress = rng.randint(0, 100)
            registry.update_task(tid, progress=progress, status="running")
            model[tid].update(progress=progress, status=TaskStatus.RUNNING)
        elif op == "remove":
            tid = rng.choice(sorted(model))
            registry.remove_task(tid)
            del model[tid]
        else:
            registry.update_task("task-does-not-exist", progress=1)

        assert registry.count_tasks() == len(model)
        for tid, expected in model.items():
            task = registry.get_task(tid)
            assert task is not None
            assert task.title == expected["title"]
            assert task.progress == expected["progress"]
            assert task.status == expected["status"]


def test_format_duration() -> None:
    running = Task(id="a", status=TaskStatus.RUNNING, created_at=100.0)
    done = Task(id="b", status=TaskStatus.COMPLETED, created_at=100.0, updated_at=175.0)
    pending = Task(id="c", created_at=100.0)

    assert format_duration(running, now=165.0) == "1:05"
    assert format_duration(done) == "1:15"
    assert format_duration(pending) == "-"


def test_status_coerce_rejects_unknown_values() -> None:
    assert TaskStatus.coerce("COMPLETED") == TaskStatus.COMPLETED
    with pytest.raises(ValueError, match="Unknown task status"):
        TaskStatus.coerce("done")
    assert TaskStatus.CANCELLED.is_terminal
    assert not TaskStatus.RUNNING.is_terminal


def test_unknown_status_in_patch_leaves_task_unchanged(registry: TaskRegistry) -> None:
    tid = registry.add_task(title="A")
    registry.update_task(tid, status="completed", progress=100)
    events = TaskEvents()
    registry.subscribe(events)

    with pytest.raises(ValueError):
        registry.update_task(tid, status="done", progress=5)

    task = registry.get_task(tid)
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.progress == 100
    assert events.snapshots == []
