"""
Progress Monitor
================
Polls a task's progress.json and emits events when it changes.

The file is written by both the engine and the external agent, so the
monitor only ever reads it and compares content hashes between polls.

Events (payload keys in camelCase):
    watch_start  {taskId}
    watch_stop   {taskId}
    progress     {taskId, progress}   any content change
    complete     {taskId, progress}   completionDetected false → true
    error        {taskId, progress}   error None → set
    feedback     {taskId, progress}   feedbackResults changed

``complete``, ``error`` and ``feedback`` never fire on the first observation:
a record that already says "complete" when watching starts is state, not a
transition.
"""
import asyncio
import logging
from typing import Any, Optional

from pydantic import ValidationError

from battleloop.core.config import DEFAULT_POLL_INTERVAL_MS
from battleloop.core.errors import AlreadyWatchingError, StoreValidationError
from battleloop.models.progress import Progress
from battleloop.services.file_store import FileStore
from battleloop.utils.content_hash import compute_content_hash
from battleloop.utils.events import EventBus

logger = logging.getLogger(__name__)


class ProgressMonitor:

    def __init__(
        self,
        store: FileStore,
        events: Optional[EventBus] = None,
        interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    ) -> None:
        self.store = store
        self.events = events or EventBus()
        self.interval_ms = interval_ms

        self._task_id: Optional[str] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._reset()

    def _reset(self) -> None:
        self._observed = False
        self._last_hash: Optional[str] = None
        self._last_feedback_hash: Optional[str] = None
        self._last_completion = False
        self._last_error: Optional[str] = None

    @property
    def task_id(self) -> Optional[str]:
        return self._task_id

    @property
    def is_watching(self) -> bool:
        return self._task_id is not None

    def on(self, event, listener) -> None:
        self.events.on(event, listener)

    def off(self, event, listener) -> None:
        self.events.off(event, listener)

    def watch(self, task_id: str, interval_ms: Optional[int] = None) -> None:
        """Start polling; must be called from a running event loop."""
        if self._task_id is not None:
            raise AlreadyWatchingError(self._task_id)
        if interval_ms is not None:
            self.interval_ms = interval_ms

        self._reset()
        self._task_id = task_id
        self._poll_task = asyncio.get_running_loop().create_task(self._run(task_id))
        logger.info("Watching progress for %s every %dms", task_id, self.interval_ms)
        self.events.emit("watch_start", {"taskId": task_id})

    def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        if self._task_id is not None:
            task_id = self._task_id
            self._task_id = None
            self.events.emit("watch_stop", {"taskId": task_id})

    async def _run(self, task_id: str) -> None:
        while self._task_id == task_id:
            try:
                await self.poll()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Progress poll for %s failed", task_id)
            await asyncio.sleep(self.interval_ms / 1000)

    async def poll(self) -> Optional[Progress]:
        """
        Run one poll. Returns the new Progress when it changed, else None.
        """
        task_id = self._task_id
        if task_id is None:
            return None

        try:
            raw = await self.store.read_progress_raw(task_id)
        except StoreValidationError as e:
            # Usually a write in progress by a non-atomic writer
            logger.debug("Unreadable progress for %s: %s", task_id, e)
            return None
        if raw is None or task_id != self._task_id:
            return None

        content_hash = compute_content_hash(raw)
        if content_hash == self._last_hash:
            return None
        self._last_hash = content_hash

        try:
            progress = Progress.model_validate(raw)
        except ValidationError as e:
            logger.warning("Invalid progress record for %s: %s", task_id, e.error_count())
            return None

        first = not self._observed
        payload = {"taskId": task_id, "progress": progress}
        feedback_hash = compute_content_hash(_feedback_section(raw))

        self.events.emit("progress", payload)
        if not first:
            if progress.completion_detected and not self._last_completion:
                self.events.emit("complete", payload)
            if progress.error is not None and self._last_error is None:
                self.events.emit("error", payload)
            if feedback_hash != self._last_feedback_hash:
                self.events.emit("feedback", payload)

        self._observed = True
        self._last_completion = progress.completion_detected
        self._last_error = progress.error
        self._last_feedback_hash = feedback_hash
        return progress


def _feedback_section(raw: Any) -> Any:
    if isinstance(raw, dict):
        return raw.get("feedbackResults", raw.get("feedback_results", {}))
    return {}
