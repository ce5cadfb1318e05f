"""
Daily lesson fan-out.

Once a day at ``DAILY_MESSAGE_TIME`` (``TIMEZONE`` local time) one lesson is
generated per difficulty level in use and queued to every subscriber of
that level. A level whose generation fails only costs its own subscribers
their lesson, and a failure for one user never stops the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from telegram.ext import ContextTypes, Job, JobQueue

import config
from database import Database
from lessons import Lesson, LessonGenerator, render_lesson
from message_queue import MessageQueue

logger = logging.getLogger(__name__)

LAST_RUN_KEY = "last_daily_run"
JOB_NAME = "daily_lessons"


@dataclass
class FanoutReport:
    """Counts of one fan-out run."""

    eligible: int = 0
    queued: int = 0
    skipped: int = 0
    failed: int = 0
    failed_levels: List[int] = field(default_factory=list)


class DailyScheduler:
    def __init__(
        self,
        db: Database,
        generator: LessonGenerator,
        queue: MessageQueue,
        timezone: str = config.TIMEZONE,
        send_time: time = config.DAILY_MESSAGE_TIME,
    ) -> None:
        self.db = db
        self.generator = generator
        self.queue = queue
        self.tz = ZoneInfo(timezone)
        self.send_time = send_time

    def register(self, job_queue: JobQueue) -> Job:
        """Schedule the daily job on the application's job queue."""
        for job in job_queue.get_jobs_by_name(JOB_NAME):
            job.schedule_removal()
        job = job_queue.run_daily(
            self.run_job,
            time=self.send_time.replace(tzinfo=self.tz),
            name=JOB_NAME,
        )
        logger.info("Daily lessons scheduled at %s %s", self.send_time.strftime("%H:%M"), self.tz.key)
        return job

    def today(self) -> date:
        return datetime.now(self.tz).date()

    def already_ran_today(self, today: Optional[date] = None) -> bool:
        today = today or self.today()
        return self.db.get_state(LAST_RUN_KEY) == today.isoformat()

    async def run_job(self, context: ContextTypes.DEFAULT_TYPE) -> Optional[FanoutReport]:
        """Job queue callback: run the fan-out unless it already ran today."""
        today = self.today()
        if self.already_ran_today(today):
            logger.warning("Daily lessons for %s were already sent, skipping", today)
            return None
        report = await self.send_daily_lessons()
        self.db.set_state(LAST_RUN_KEY, today.isoformat())
        return report

    async def generate_lessons(self, levels: List[int]) -> Dict[int, Lesson]:
        lessons: Dict[int, Lesson] = {}
        for level in levels:
            try:
                lessons[level] = await self.generator.generate(level)
                logger.info("Generated lesson for difficulty %d", level)
            except Exception:
                logger.exception("Error generating lesson for difficulty %d", level)
        return lessons

    async def send_daily_lessons(self) -> FanoutReport:
        """Queue today's lesson for every user with an active subscription.

        Store errors while listing subscribers propagate; everything after
        that is isolated per difficulty level and per user.
        """
        users = self.db.get_eligible_users()
        report = FanoutReport(eligible=len(users))
        logger.info("Daily lesson run triggered for %d user(s)", len(users))

        levels = sorted({user["difficulty_level"] for user in users})
        lessons = await self.generate_lessons(levels)
        report.failed_levels = [level for level in levels if level not in lessons]

        for user in users:
            user_id = user["telegram_user_id"]
            level = user["difficulty_level"]
            lesson = lessons.get(level)
            if lesson is None:
                logger.error("No lesson for difficulty %d, skipping user %s", level, user_id)
                report.skipped += 1
                continue
            try:
                chat_id = int(user_id)
                self.db.save_sentence(lesson, level)
                self.queue.enqueue(chat_id, render_lesson(lesson))
                report.queued += 1
            except Exception:
                logger.exception("Error queuing lesson for user %s", user_id)
                report.failed += 1

        logger.info(
            "Queued %d daily lesson(s): %d skipped, %d failed, failed levels %s",
            report.queued, report.skipped, report.failed, report.failed_levels,
        )
        return report
