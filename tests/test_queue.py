"""
Tests for the persistent task queue.
"""

import asyncio

import pytest

from podroom.errors import TaskCancelledError, UpstreamError, ValidationError
from podroom.events import EventEmitter
from podroom.models import TaskStatus
from podroom.queue import CANCELED_MESSAGE, INTERRUPTED_MESSAGE, TaskQueue
from podroom.stats import UsageStats


async def succeed(task, should_cancel):
    return {"episode_id": "ep-" + task.id[:4], "metrics": {"chunks_count": 3}}


def make_queue(tmp_path, processor=succeed, **kwargs):
    options = dict(
        state_file=tmp_path / "queue.json",
        max_concurrent=2,
        poll_interval=0.05,
        task_timeout=5,
    )
    options.update(kwargs)
    return TaskQueue(processor=processor, **options)


def submit(queue, url="https://example.com/ep1.mp3", **data):
    return queue.add_task("process_episode", {"url": url, **data})


class TestSubmission:
    def test_add_task(self, tmp_path):
        queue = make_queue(tmp_path)
        task_id = submit(queue, title="Episode One")

        task = queue.get_task_status(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.data.title == "Episode One"
        assert task.started_at is None
        assert (tmp_path / "queue.json").exists()

    def test_in_flight_url_is_deduplicated(self, tmp_path):
        queue = make_queue(tmp_path)

        first = submit(queue)
        second = submit(queue)
        other = submit(queue, url="https://example.com/ep2.mp3")

        assert first == second
        assert other != first
        assert len(queue.tasks) == 2

    def test_resubmit_after_completion_creates_new_task(self, tmp_path):
        queue = make_queue(tmp_path)
        first = submit(queue)
        asyncio.run(queue.run_until_idle())

        second = submit(queue)

        assert second != first
        assert queue.get_task_by_url("https://example.com/ep1.mp3").id == second

    @pytest.mark.parametrize(
        "task_type,data",
        [
            ("transcode", {"url": "https://example.com/a.mp3"}),
            ("process_episode", {}),
            ("process_episode", {"url": "ftp://example.com/a.mp3"}),
            ("process_episode", {"url": "   "}),
        ],
    )
    def test_invalid_submissions_rejected(self, tmp_path, task_type, data):
        queue = make_queue(tmp_path)

        with pytest.raises(ValidationError):
            queue.add_task(task_type, data)
        assert queue.tasks == {}

    def test_lookups(self, tmp_path):
        queue = make_queue(tmp_path)
        task_id = submit(queue)

        assert queue.get_task_status("missing") is None
        assert queue.get_task_by_url("https://example.com/ep1.mp3").id == task_id
        assert queue.get_task_by_url("https://example.com/other.mp3") is None
        assert [t.id for t in queue.list_tasks(TaskStatus.PENDING)] == [task_id]


class TestExecution:
    def test_success_records_result_and_metrics(self, tmp_path):
        stats = UsageStats()
        queue = make_queue(tmp_path, stats=stats)
        task_id = submit(queue)

        asyncio.run(queue.run_until_idle())

        task = queue.get_task_status(task_id)
        assert task.status == TaskStatus.READY
        assert task.result["episode_id"].startswith("ep-")
        assert task.metrics == {"chunks_count": 3}
        assert task.error is None
        assert task.started_at is not None
        assert task.completed_at >= task.started_at
        assert stats.tasks_completed == 1

    def test_failure_records_error(self, tmp_path):
        async def fail(task, should_cancel):
            raise UpstreamError("ASR service unavailable")

        stats = UsageStats()
        queue = make_queue(tmp_path, processor=fail, stats=stats)
        task_id = submit(queue)

        asyncio.run(queue.run_until_idle())

        task = queue.get_task_status(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == "ASR service unavailable"
        assert task.result is None
        assert task.completed_at is not None
        assert stats.tasks_failed == 1

    def test_no_automatic_retry(self, tmp_path):
        calls = []

        async def fail(task, should_cancel):
            calls.append(task.id)
            raise UpstreamError("down")

        queue = make_queue(tmp_path, processor=fail)
        submit(queue)
        asyncio.run(queue.run_until_idle())
        asyncio.run(queue.run_until_idle())

        assert len(calls) == 1

    def test_timeout(self, tmp_path):
        async def slow(task, should_cancel):
            await asyncio.sleep(5)

        queue = make_queue(tmp_path, processor=slow, task_timeout=0.05)
        task_id = submit(queue)

        asyncio.run(queue.run_until_idle())

        task = queue.get_task_status(task_id)
        assert task.status == TaskStatus.FAILED
        assert "timed out" in task.error

    def test_fifo_order(self, tmp_path):
        order = []

        async def record(task, should_cancel):
            order.append(task.data.url)
            return {}

        queue = make_queue(tmp_path, processor=record, max_concurrent=1)
        urls = [f"https://example.com/{i}.mp3" for i in range(3)]
        for url in urls:
            submit(queue, url=url)

        asyncio.run(queue.run_until_idle())

        assert order == urls

    def test_concurrency_bound(self, tmp_path):
        active = []
        peak = []

        async def track(task, should_cancel):
            active.append(task.id)
            peak.append(len(active))
            await asyncio.sleep(0.02)
            active.remove(task.id)
            return {}

        queue = make_queue(tmp_path, processor=track, max_concurrent=2)
        for i in range(5):
            submit(queue, url=f"https://example.com/{i}.mp3")

        asyncio.run(queue.run_until_idle())

        assert max(peak) == 2
        assert queue.get_queue_status().completed == 5

    def test_lifecycle_events(self, tmp_path):
        events = EventEmitter()
        seen = []
        events.on("*", lambda event, payload: seen.append(event))
        queue = make_queue(tmp_path, events=events)

        async def scenario():
            submit(queue)
            await queue.run_until_idle()
            await events.drain()

        asyncio.run(scenario())

        assert seen[0] == "task.created"
        assert seen[1:] == ["task.started", "task.completed"]

    def test_workers_pick_up_new_tasks(self, tmp_path):
        queue = make_queue(tmp_path)

        async def scenario():
            await queue.start()
            task_id = submit(queue)
            for _ in range(200):
                if queue.get_task_status(task_id).status.is_terminal:
                    break
                await asyncio.sleep(0.01)
            await queue.stop(grace_period=1)
            return task_id

        task_id = asyncio.run(scenario())
        assert queue.get_task_status(task_id).status == TaskStatus.READY


class TestCancellation:
    def test_cancel_pending(self, tmp_path):
        queue = make_queue(tmp_path)
        task_id = submit(queue)

        assert queue.cancel(task_id) is True

        task = queue.get_task_status(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == CANCELED_MESSAGE

    def test_cancel_terminal_or_unknown(self, tmp_path):
        queue = make_queue(tmp_path)
        task_id = submit(queue)
        asyncio.run(queue.run_until_idle())

        assert queue.cancel(task_id) is False
        assert queue.cancel("missing") is False
        assert queue.get_task_status(task_id).status == TaskStatus.READY

    def test_cancel_running_at_stage_boundary(self, tmp_path):
        async def cooperative(task, should_cancel):
            while not should_cancel():
                await asyncio.sleep(0.01)
            raise TaskCancelledError("Canceled before cleaning")

        queue = make_queue(tmp_path, processor=cooperative)

        async def scenario():
            task_id = submit(queue)
            runner = asyncio.create_task(queue.run_until_idle())
            while queue.get_task_status(task_id).status != TaskStatus.RUNNING:
                await asyncio.sleep(0.01)
            assert queue.cancel(task_id) is True
            await runner
            return task_id

        task_id = asyncio.run(scenario())

        task = queue.get_task_status(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == CANCELED_MESSAGE
        assert not queue.is_cancel_requested(task_id)


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        queue = make_queue(tmp_path)
        task_id = submit(queue, title="Saved")

        reloaded = make_queue(tmp_path)

        task = reloaded.get_task_status(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.data.title == "Saved"

    def test_running_tasks_left_alone_on_load(self, tmp_path):
        queue = make_queue(tmp_path)
        task_id = submit(queue)
        queue._claim_next()

        reloaded = make_queue(tmp_path)

        assert reloaded.get_task_status(task_id).status == TaskStatus.RUNNING
        assert make_queue(tmp_path).get_queue_status().running == 1

    def test_recover_interrupted(self, tmp_path):
        queue = make_queue(tmp_path)
        task_id = submit(queue)
        queue._claim_next()

        reloaded = make_queue(tmp_path)
        assert reloaded.recover_interrupted() == 1

        task = make_queue(tmp_path).get_task_status(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == INTERRUPTED_MESSAGE

    def test_start_recovers_interrupted(self, tmp_path):
        crashed = make_queue(tmp_path)
        task_id = submit(crashed)
        crashed._claim_next()
        restarted = make_queue(tmp_path)

        async def scenario():
            await restarted.start()
            await restarted.stop(grace_period=1)

        asyncio.run(scenario())

        assert restarted.get_task_status(task_id).error == INTERRUPTED_MESSAGE

    def test_corrupt_state_starts_empty(self, tmp_path):
        (tmp_path / "queue.json").write_text("{not json", encoding="utf-8")

        queue = make_queue(tmp_path)
        assert queue.tasks == {}

    def test_queue_status_counts(self, tmp_path):
        async def maybe_fail(task, should_cancel):
            if "bad" in task.data.url:
                raise UpstreamError("bad audio")
            return {}

        queue = make_queue(tmp_path, processor=maybe_fail)
        submit(queue, url="https://example.com/good.mp3")
        submit(queue, url="https://example.com/bad.mp3")
        asyncio.run(queue.run_until_idle())
        submit(queue, url="https://example.com/later.mp3")

        status = queue.get_queue_status()
        assert (status.pending, status.running, status.completed, status.failed) == (1, 0, 1, 1)
        assert status.total == 3
        assert status.max_concurrent == 2
        assert status.current_concurrent == 0

    def test_run_without_processor_claims_nothing(self, tmp_path):
        queue = make_queue(tmp_path, processor=None)
        task_id = submit(queue)

        with pytest.raises(RuntimeError):
            asyncio.run(queue.run_until_idle())
        with pytest.raises(RuntimeError):
            asyncio.run(queue.start())

        assert queue.get_task_status(task_id).status == TaskStatus.PENDING


class TestSharedStateFile:
    """A server queue and CLI commands open the same state file."""

    def test_task_added_by_another_instance_is_processed(self, tmp_path):
        server = make_queue(tmp_path)
        cli = make_queue(tmp_path)

        task_id = submit(cli)
        assert server.get_task_status(task_id).status == TaskStatus.PENDING

        asyncio.run(server.run_until_idle())

        assert server.get_task_status(task_id).status == TaskStatus.READY
        assert make_queue(tmp_path).get_task_status(task_id).status == TaskStatus.READY

    def test_saves_keep_tasks_from_other_instances(self, tmp_path):
        server = make_queue(tmp_path)
        cli = make_queue(tmp_path)

        from_cli = submit(cli, url="https://example.com/ep1.mp3")
        from_server = submit(server, url="https://example.com/ep2.mp3")

        reloaded = make_queue(tmp_path)
        assert reloaded.get_task_status(from_cli) is not None
        assert reloaded.get_task_status(from_server) is not None
        assert submit(server, url="https://example.com/ep1.mp3") == from_cli

    def test_terminal_state_never_reverts(self, tmp_path):
        server = make_queue(tmp_path)
        task_id = submit(server)
        task = server._claim_next()
        make_queue(tmp_path).recover_interrupted()

        assert server._finish(task, TaskStatus.READY, result={}) is False

        stored = make_queue(tmp_path).get_task_status(task_id)
        assert stored.status == TaskStatus.FAILED
        assert stored.error == INTERRUPTED_MESSAGE
        assert server.get_queue_status().current_concurrent == 0

    def test_cancel_from_another_instance(self, tmp_path):
        server = make_queue(tmp_path)
        task_id = submit(server)

        assert make_queue(tmp_path).cancel(task_id) is True

        asyncio.run(server.run_until_idle())
        task = server.get_task_status(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == CANCELED_MESSAGE
