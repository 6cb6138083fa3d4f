"""Cron scheduler: runs configured prompts and reports results through the outbox."""

import asyncio
from datetime import datetime, timezone

from croniter import croniter
from loguru import logger

from opencode_claw.agent.prompt import PromptTimeout, prompt_streaming
from opencode_claw.config.schema import CronConfig, CronJobConfig
from opencode_claw.outbox.writer import OutboxWriter
from opencode_claw.runtime.base import AgentRuntime


def next_fire_time(schedule: str, now: datetime | None = None) -> datetime:
    base = now or datetime.now().astimezone()
    return croniter(schedule, base).get_next(datetime)


class CronScheduler:
    """
    One asyncio task per enabled job sleeps until the job's next fire time.

    A job that is still running when it fires again is skipped for that tick.
    """

    def __init__(self, runtime: AgentRuntime, outbox: OutboxWriter, config: CronConfig):
        self.runtime = runtime
        self.outbox = outbox
        self.config = config
        self._loops: dict[str, asyncio.Task] = {}
        self._runs: set[asyncio.Task] = set()
        self._running_jobs: set[str] = set()

    @property
    def scheduled_jobs(self) -> list[str]:
        return list(self._loops)

    async def start(self) -> None:
        if not self.config.enabled:
            logger.info("Cron disabled by config")
            return

        for job in self.config.jobs:
            if not job.enabled:
                logger.info(f"Cron: skipping disabled job '{job.id}'")
                continue
            if not croniter.is_valid(job.schedule):
                logger.error(f"Cron: invalid schedule for job '{job.id}': {job.schedule}")
                continue
            self._loops[job.id] = asyncio.create_task(self._job_loop(job))
            description = f" - {job.description}" if job.description else ""
            logger.info(f"Cron: scheduled '{job.id}' ({job.schedule}){description}")

        logger.info(f"Cron: {len(self._loops)} job(s) scheduled")

    async def stop(self) -> None:
        tasks = list(self._loops.values()) + list(self._runs)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loops.clear()
        self._runs.clear()
        logger.info("Cron: all jobs stopped")

    async def _job_loop(self, job: CronJobConfig) -> None:
        while True:
            now = datetime.now().astimezone()
            fire_at = next_fire_time(job.schedule, now)
            await asyncio.sleep(max(0.0, (fire_at - now).total_seconds()))
            task = asyncio.create_task(self.run_job(job))
            self._runs.add(task)
            task.add_done_callback(self._runs.discard)

    async def run_job(self, job: CronJobConfig) -> str | None:
        """Run a job once. Returns the agent's text, or None if skipped or failed."""
        if job.id in self._running_jobs:
            logger.warning(f"Cron: job '{job.id}' already running, skipping")
            return None

        self._running_jobs.add(job.id)
        timeout_ms = job.timeout_ms or self.config.default_timeout_ms
        logger.info(f"Cron: firing job '{job.id}' ({job.schedule})")
        try:
            title = f"cron:{job.id}:{datetime.now(timezone.utc).isoformat()}"
            session_id = await self.runtime.create_session(title)
            try:
                text = await prompt_streaming(self.runtime, session_id, job.prompt, timeout_ms)
            except PromptTimeout:
                logger.warning(f"Cron: job '{job.id}' timed out after {timeout_ms}ms")
                return None

            logger.info(f"Cron: job '{job.id}' completed ({len(text)} chars, session {session_id})")
            if job.report_to and text.strip():
                target = job.report_to
                self.outbox.enqueue(target.channel, target.peer_id, text, target.thread_id)
                logger.info(f"Cron: job '{job.id}' result queued for {target.channel}:{target.peer_id}")
            return text
        except Exception as e:
            logger.error(f"Cron: job '{job.id}' failed: {e}")
            return None
        finally:
            self._running_jobs.discard(job.id)
