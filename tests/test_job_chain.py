# tests/test_job_chain.py

from __future__ import annotations

import pytest

from ai_toolbox.jobs.extractors import decode_image_base64, template_payload
from ai_toolbox.jobs.job_models import CancellationToken, IterationResult, JobState
from ai_toolbox.jobs.job_poller import ChainSpec, JobPoller, chain_band
from ai_toolbox.tasks.task_models import TaskStatus
from ai_toolbox.tasks.task_registry import TaskRegistry

from .fakes import FakeClock, ScriptedJobService, TaskEvents, completed, in_progress

TEMPLATE = {"input": {"image": "{{input}}", "steps": 8}}


def _poller(service: ScriptedJobService, registry: TaskRegistry, clock: FakeClock) -> JobPoller:
    return JobPoller(service, registry, sleep=clock.sleep, clock=clock)


def _chain_task(registry: TaskRegistry) -> str:
    tid = registry.add_task(type="runpod-chain", title="Chain", description="Upscale")
    registry.update_task(tid, status="running")
    return tid


def test_chain_bands_split_20_to_90() -> None:
    assert chain_band(1, 1) == (20.0, 90.0)
    lo, hi = chain_band(2, 3)
    assert lo == pytest.approx(20 + 70 / 3)
    assert hi == pytest.approx(20 + 140 / 3)
    assert chain_band(3, 3)[1] == pytest.approx(90.0)


@pytest.mark.asyncio
async def test_each_iteration_feeds_the_next(registry: TaskRegistry, clock: FakeClock) -> None:
    service = ScriptedJobService(
        [*in_progress(1), completed(["out1"])],
        [completed(["out2"])],
        [completed(["out3"])],
    )
    tid = _chain_task(registry)
    events = TaskEvents()
    registry.subscribe(events)
    seen: list[list[int]] = []

    def on_iteration(item: IterationResult, results: list[IterationResult]) -> None:
        seen.append([r.number for r in results])

    spec = ChainSpec(initial_input="in", build_payload=template_payload(TEMPLATE), iterations=3)
    outcome = await _poller(service, registry, clock).run_chain(tid, spec, on_iteration=on_iteration)

    assert outcome.state == JobState.COMPLETED
    assert [p["input"]["image"] for p in service.submitted] == ["in", "out1", "out2"]
    assert [r.result.url for r in outcome.results] == ["out1", "out2", "out3"]
    assert seen == [[1], [1, 2], [1, 2, 3]]

    task = registry.get_task(tid)
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.result_url == "out3"
    assert task.description == "Upscale (iteration 3/3)"

    progress = [t.progress for t in events.history_of(tid)]
    assert progress == sorted(progress)
    assert progress[0] == 20
    assert progress[-1] == 100


@pytest.mark.asyncio
async def test_failed_iteration_stops_the_chain(registry: TaskRegistry, clock: FakeClock) -> None:
    service = ScriptedJobService(
        [completed(["out1"])],
        [{"status": "FAILED", "error": "bad input"}],
        [completed(["out3"])],
    )
    tid = _chain_task(registry)
    calls: list[int] = []

    spec = ChainSpec(initial_input="in", build_payload=template_payload(TEMPLATE), iterations=3)
    outcome = await _poller(service, registry, clock).run_chain(
        tid, spec, on_iteration=lambda item, results: calls.append(item.number)
    )

    assert outcome.state == JobState.FAILED
    assert len(outcome.results) == 1
    assert len(service.submitted) == 2
    assert calls == [1]
    assert outcome.error == "Iteration 2/3: bad input"

    task = registry.get_task(tid)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.error == "Iteration 2/3: bad input"
    assert task.progress == 100


@pytest.mark.asyncio
async def test_single_iteration_failure_has_no_prefix(registry: TaskRegistry, clock: FakeClock) -> None:
    service = ScriptedJobService([{"status": "FAILED"}])
    tid = _chain_task(registry)

    spec = ChainSpec(initial_input="in", build_payload=template_payload(TEMPLATE))
    outcome = await _poller(service, registry, clock).run_chain(tid, spec)

    assert outcome.error == "Job failed"


@pytest.mark.asyncio
async def test_image_chain_passes_clean_base64(registry: TaskRegistry, clock: FakeClock) -> None:
    service = ScriptedJobService(
        [completed({"images": ["data:image/png;base64,AAA"]})],
        [completed({"images": ["BBB"]})],
    )
    tid = _chain_task(registry)

    spec = ChainSpec(
        initial_input="START",
        build_payload=template_payload(TEMPLATE),
        iterations=2,
        decoder=decode_image_base64,
    )
    outcome = await _poller(service, registry, clock).run_chain(tid, spec)

    assert outcome.ok
    assert service.submitted[1]["input"]["image"] == "AAA"
    assert [r.to_dict() for r in outcome.results] == [
        {"number": 1, "dataUrl": "data:image/png;base64,AAA", "base64": "AAA"},
        {"number": 2, "dataUrl": "data:image/png;base64,BBB", "base64": "BBB"},
    ]


@pytest.mark.asyncio
async def test_payload_builder_error_fails_before_submit(registry: TaskRegistry, clock: FakeClock) -> None:
    service = ScriptedJobService([completed(["x"])])
    tid = _chain_task(registry)

    def broken(current: str, iteration: int) -> dict:
        raise KeyError("image")

    outcome = await _poller(service, registry, clock).run_chain(
        tid, ChainSpec(initial_input="in", build_payload=broken)
    )

    assert outcome.state == JobState.FAILED
    assert service.submitted == []
    assert (outcome.error or "").startswith("Invalid payload")


@pytest.mark.asyncio
async def test_callback_errors_do_not_stop_the_chain(registry: TaskRegistry, clock: FakeClock) -> None:
    service = ScriptedJobService([completed(["a"])], [completed(["b"])])
    tid = _chain_task(registry)

    def broken(item: IterationResult, results: list[IterationResult]) -> None:
        raise RuntimeError("ui gone")

    spec = ChainSpec(initial_input="in", build_payload=template_payload(TEMPLATE), iterations=2)
    outcome = await _poller(service, registry, clock).run_chain(tid, spec, on_iteration=broken)

    assert outcome.ok
    assert len(outcome.results) == 2


@pytest.mark.asyncio
async def test_cancel_mid_chain_keeps_earlier_results(registry: TaskRegistry, clock: FakeClock) -> None:
    service = ScriptedJobService([completed(["a"])], in_progress(1))
    token = CancellationToken()
    service.on_status = lambda job_id, n: token.cancel() if job_id == "job-2" else None
    tid = _chain_task(registry)

    spec = ChainSpec(initial_input="in", build_payload=template_payload(TEMPLATE), iterations=3)
    outcome = await _poller(service, registry, clock).run_chain(tid, spec, token=token)

    assert outcome.state == JobState.CANCELLED
    assert len(outcome.results) == 1
    assert len(service.submitted) == 2
    task = registry.get_task(tid)
    assert task is not None
    assert task.status == TaskStatus.CANCELLED
