from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Optional

logger = logging.getLogger("talentforge.pipeline")

PostInterviewPipeline = Callable[[str], None]


def log_only_pipeline(interview_id: str) -> None:
    logger.info("post_interview_pipeline_requested interview_id=%s", interview_id)


class PipelineTrigger:
    """Fire-and-forget runner for the post-interview pipeline.

    Jobs run on a process-scoped thread pool. A failing job is logged and counted
    here and never propagates to the webhook request that triggered it.
    """

    def __init__(
        self, pipeline: Optional[PostInterviewPipeline] = None, max_workers: int = 2
    ) -> None:
        self.pipeline = pipeline or log_only_pipeline
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="post-interview"
        )
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self.failures = 0

    def fire(self, interview_id: str) -> Optional[Future]:
        try:
            future = self._executor.submit(self.pipeline, interview_id)
        except RuntimeError as exc:
            # Executor already shut down; the triggering event stays committed.
            with self._lock:
                self.failures += 1
            logger.error(
                "post_interview_pipeline_not_scheduled interview_id=%s error=%s",
                interview_id,
                exc,
            )
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(lambda done: self._on_done(interview_id, done))
        logger.info("post_interview_pipeline_fired interview_id=%s", interview_id)
        return future

    def _on_done(self, interview_id: str, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            with self._lock:
                self.failures += 1
            logger.error(
                "post_interview_pipeline_failed interview_id=%s error=%s",
                interview_id,
                exc,
                exc_info=exc,
            )

    def wait_idle(self, timeout: Optional[float] = 5.0) -> bool:
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_jobs)
