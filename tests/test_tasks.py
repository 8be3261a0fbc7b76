"""Tests for the Celery task wiring."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from groupthink import tasks
from groupthink.durable import SqliteStepStore
from groupthink.workflow import JobParams, JobType


@pytest.fixture
def step_db(temp_db, monkeypatch):
    monkeypatch.setenv("GROUPTHINK_STEP_DB", temp_db)
    return temp_db


def _params():
    return JobParams(JobType.SUMMARIZE, "100", "tok")


class TestTaskConfig:
    """Tests for task registration."""

    def test_routes_to_text_queue(self):
        assert tasks.celery_app.conf.task_routes["tasks.run_workflow"] == {"queue": "text"}
        assert tasks.run_workflow.name == "tasks.run_workflow"

    def test_acks_late(self):
        assert tasks.run_workflow.acks_late is True

    def test_submit_job_sends_plain_dict(self):
        with patch.object(tasks.run_workflow, "apply_async", MagicMock(return_value="result")) as send:
            assert tasks.submit_job(_params()) == "result"
        send.assert_called_once_with(args=[_params().to_dict()], queue="text")


class TestRunWorkflow:
    """Tests for task execution."""

    def test_runs_job_with_task_id(self, step_db):
        seen = {}

        async def fake_execute(params, job_id, store, settings):
            seen.update(params=params, job_id=job_id, db=store.db_path)
            store.put(job_id, "fetch-context", "[]")

        with patch.object(tasks, "execute_job", AsyncMock(side_effect=fake_execute)):
            result = tasks.run_workflow.apply(args=[_params().to_dict()], task_id="job-42")

        assert result.get() == "job-42"
        assert seen["params"] == _params()
        assert seen["job_id"] == "job-42"
        assert seen["db"] == step_db
        assert SqliteStepStore(step_db).get("job-42", "fetch-context") is None

    def test_failure_propagates(self, step_db):
        with patch.object(tasks, "execute_job", AsyncMock(side_effect=RuntimeError("boom"))):
            result = tasks.run_workflow.apply(args=[_params().to_dict()], task_id="job-43")
        with pytest.raises(RuntimeError):
            result.get()

    def test_rejects_unknown_job_type(self, step_db):
        result = tasks.run_workflow.apply(
            args=[{"job_type": "dance", "channel_id": "1", "correlation_token": "t"}]
        )
        with pytest.raises(ValueError):
            result.get()
