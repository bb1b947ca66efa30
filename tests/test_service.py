"""
End-to-end tests through the service: queue -> pipeline -> index -> QA.
"""

import asyncio

import pytest

from podroom.cache import cache_keys
from podroom.errors import ConsistencyError, ValidationError
from podroom.models import TaskStatus
from podroom.search import NOT_FOUND_ANSWER
from podroom.service import PodroomService

from .conftest import FakeProbe

URL = "https://example.com/ep1.mp3"


def process(service, url=URL, title="Episode One"):
    task_id = service.submit(url, title=title)
    asyncio.run(service.queue.run_until_idle())
    return service.queue.get_task_status(task_id)


class TestProcessing:
    def test_submitted_url_is_processed(self, service):
        task = process(service)

        assert task.status == TaskStatus.READY, task.error
        episode = service.db.get_episode(task.result["episode_id"])
        assert episode.title == "Episode One"
        assert episode.source_url == URL
        assert task.metrics["chunks_count"] == task.result["chunks_count"]
        assert task.metrics["steps"]["asr"]["status"] == "completed"

    def test_resubmission_reuses_episode_and_cache(self, service, transcriber):
        first = process(service)
        second = process(service)

        assert second.id != first.id
        assert second.result["episode_id"] == first.result["episode_id"]
        assert len(transcriber.requests) == 3
        assert second.metrics["from_cache"] is True

    def test_invalid_url_never_enqueued(self, service):
        with pytest.raises(ValidationError):
            service.submit("not a url")
        assert service.queue.get_queue_status().total == 0

    def test_usage_stats_collected(self, service):
        process(service)

        snapshot = service.stats.snapshot()
        assert snapshot["tasks_completed"] == 1
        assert snapshot["cache_misses"] >= 3  # transcript, script, summary
        assert set(snapshot["stage_seconds"]) == {"asr", "cleaning", "report", "indexing"}


class TestConsistency:
    def test_unknown_episode(self, service):
        report = service.check_episode_consistency("missing")

        assert report.exists is False
        assert report.issues == ["Episode not found"]

    def test_new_episode_missing_everything(self, service):
        episode = service.db.upsert_episode_by_url(URL)

        report = service.check_episode_consistency(episode.id)

        assert report.issues == ["Missing transcript", "Missing cleaned script", "Missing summary"]
        assert not report.consistent

    def test_processed_episode_is_consistent(self, service):
        task = process(service)

        report = service.check_episode_consistency(task.result["episode_id"])

        assert report.consistent
        assert report.chunks_count > 0

    def test_unindexed_script_reported(self, service):
        task = process(service)
        episode_id = task.result["episode_id"]
        service.db.delete_chunks(episode_id)

        report = service.check_episode_consistency(episode_id)

        assert report.issues == ["Script is not indexed"]


class TestMerge:
    def test_merge_without_target(self, service):
        episode = service.db.upsert_episode_by_url(URL)

        with pytest.raises(ConsistencyError):
            service.merge_episodes(episode.id, None)

    def test_merge_duplicate_into_target(self, service):
        task = process(service)
        source_id = task.result["episode_id"]
        target = service.db.upsert_episode_by_url("https://mirror.example.com/ep1.mp3")

        merged = service.merge_episodes(source_id, target.id)

        assert merged.script
        assert service.db.get_episode(source_id) is None
        assert service.check_episode_consistency(target.id).consistent


class TestQuestions:
    def test_no_index_not_found(self, service, llm):
        answer = asyncio.run(service.answer("What did they discuss?"))

        assert answer.answer == NOT_FOUND_ANSWER
        assert llm.calls == []

    def test_answer_logs_access(self, service):
        task = process(service)

        async def ask():
            answer = await service.answer("What was the opening remark?")
            await service.events.drain()
            return answer

        answer = asyncio.run(ask())

        assert answer.citations
        assert answer.citations[0].episode_title == "Episode One"
        logs = service.db.list_access_logs("qa.answered")
        assert [log["episode_id"] for log in logs] == [task.result["episode_id"]]

    def test_trigger_unknown_episode(self, service):
        with pytest.raises(ValidationError):
            service.trigger_pipeline("missing")


class TestInjectedSettings:
    def test_components_built_from_given_settings(self, config, llm, embedder):
        config = config.model_copy(
            update={
                "asr_endpoint": "http://injected-asr/asr",
                "asr_timeout_seconds": 12.0,
                "upstream_max_attempts": 3,
                "cache_long_ttl": 60.0,
            }
        )

        service = PodroomService.from_settings(config, llm=llm, embedder=embedder, probe=FakeProbe(400.0))

        transcriber = service.pipeline.transcriber
        assert transcriber.config.endpoint == "http://injected-asr/asr"
        assert transcriber.config.timeout == 12.0
        assert transcriber.retry.max_attempts == 3
        assert service.cache._resolve_ttl(cache_keys.transcript(URL), None) == 60.0
