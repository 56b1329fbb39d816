"""
Append-only activity log for inbound webhook deliveries.

Every delivery (accepted or rejected) is recorded as one line:

    2025-09-16T08:30:00.123Z | {"eventType": "...", "success": true, ...}

`ActivityLogger.log()` only enqueues; a background task does the file
append. Failures in that task are reported through `logging` and
dropped, so the request path never waits on or fails because of the
activity log.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from models import utc_now_iso

log = logging.getLogger(__name__)


class ActivityLogger:
    """Best-effort, fire-and-forget activity sink.

    Example usage:
        activity = ActivityLogger(Path("data/webhook-activity.log"))
        activity.log({"eventType": "ScoreCreated", "success": True})
        await activity.stop()  # flush on shutdown
    """

    def __init__(self, path: Path):
        self.path = path
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def start(self) -> None:
        """Start the writer task on the running event loop."""
        loop = asyncio.get_running_loop()
        if self._task is not None and not self._task.done() and self._loop is loop:
            return
        self._loop = loop
        self._queue = asyncio.Queue()
        self._task = loop.create_task(self._run())

    def log(self, entry: Dict[str, Any]) -> None:
        line = f"{utc_now_iso()} | {json.dumps(entry, default=str)}\n"
        try:
            self.start()
            self._queue.put_nowait(line)
        except Exception as e:
            log.warning("Activity log entry dropped: %s", e)

    async def stop(self) -> None:
        """Flush queued lines and stop the writer task."""
        if self._task is None:
            return
        if not self._task.done() and self._loop is asyncio.get_running_loop():
            await self._queue.join()
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._queue = None
        self._loop = None

    async def flush(self) -> None:
        """Wait until every queued line is on disk."""
        if self._task is not None and not self._task.done() and self._loop is asyncio.get_running_loop():
            await self._queue.join()

    def read_entries(self) -> List[Dict[str, Any]]:
        """Parsed entries from the log file, oldest first.

        Blocking; call through `asyncio.to_thread`. Lines that do not
        parse are skipped.
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            log.warning("Failed to read activity log %s: %s", self.path, e)
            return []

        entries = []
        for line in lines:
            _, sep, raw = line.partition(" | ")
            if not sep:
                continue
            try:
                entry = json.loads(raw)
            except ValueError:
                continue
            if isinstance(entry, dict):
                entries.append(entry)
        return entries

    async def _run(self) -> None:
        queue = self._queue
        while True:
            line = await queue.get()
            try:
                await asyncio.to_thread(self._append, line)
            except Exception as e:
                log.warning("Failed to write activity log %s: %s", self.path, e)
            finally:
                queue.task_done()

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)
