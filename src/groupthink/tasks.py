import asyncio
import os
import time
from typing import Any

from celery import Celery
from celery.result import AsyncResult
from celery.utils.log import get_task_logger

from groupthink.chat_platform import DiscordPlatform
from groupthink.durable import DurableSteps, SqliteStepStore, StepStore
from groupthink.settings import Settings
from groupthink.text_generators import get_text_generator
from groupthink.workflow import ConversationWorkflow, JobParams

logger = get_task_logger(__name__)

celery_app = Celery(
    "tasks",
    broker=os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0"),
    backend=os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/0"),
)

celery_app.conf.task_routes = {
    "tasks.run_workflow": {"queue": "text"},
}


async def execute_job(
    params: JobParams,
    job_id: str,
    store: StepStore,
    settings: Settings,
) -> None:
    """Run one job against Discord and Anthropic."""
    steps = DurableSteps(job_id, store)
    generator = get_text_generator("anthropic", settings.max_tokens)
    async with DiscordPlatform(settings.discord_token, settings.discord_app_id) as platform:
        workflow = ConversationWorkflow(platform, platform, generator, steps, settings=settings)
        await workflow.run(params)


@celery_app.task(name="tasks.run_workflow", queue="text", bind=True, acks_late=True)
def run_workflow(self, params: dict[str, Any]) -> str:
    """Execute a workflow job; the task id doubles as the durable job id.

    Step results stay in the store while the job is running, so a task that is
    redelivered after a worker crash resumes where it stopped.
    """
    start = time.monotonic()
    job = JobParams.from_dict(params)
    job_id = self.request.id or f"local-{int(time.time() * 1000)}"
    logger.info(
        "run_workflow[%s] START | type=%s channel=%s thread=%s",
        job_id,
        job.job_type.value,
        job.channel_id,
        job.is_thread,
    )

    settings = Settings.from_env()
    store = SqliteStepStore(settings.step_db_path)
    try:
        asyncio.run(execute_job(job, job_id, store, settings))
    except Exception as exc:
        duration = time.monotonic() - start
        logger.exception("run_workflow[%s] FAILED after %.2fs | %s", job_id, duration, exc)
        raise
    finally:
        store.clear(job_id)

    duration = time.monotonic() - start
    logger.info("run_workflow[%s] FINISH in %.2fs", job_id, duration)
    return job_id


def submit_job(params: JobParams) -> AsyncResult:
    """Queue ``params`` for a worker on the text queue."""
    return run_workflow.apply_async(args=[params.to_dict()], queue="text")
