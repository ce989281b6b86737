import asyncio
import contextlib
import sys
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles

if TYPE_CHECKING:
    from ear.context import Context

from ear.services.manager import BaseAsyncLoggingService

# -------------------------------------------------------------- #
# Async Logging Service
# -------------------------------------------------------------- #

LEVEL_ORDER = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50}

# lines written per file write
MAX_BATCH_LINES = 100

# marks the end of the queue on close
_STOP = None


class AsyncLoggingService(BaseAsyncLoggingService):
    """
    Queue-backed logger shared by every service.

    Callers never wait on disk: lines go into a queue and a single writer task appends
    them to the log file in batches. Closing drains the queue before the file is closed.
    """

    def __init__(
        self,
        context: "Context",
        log_dir: str = "logs",
        log_file: str | None = None,
        use_timestamp: bool = True,
        console_output: bool = True,
        level: str = "INFO",
    ):
        """
        Args:
            context: Context instance containing config and services
            log_dir: Directory to store log files
            log_file: Name of the log file. When None, ``recorder_<timestamp>.log`` is
                used if use_timestamp is True, otherwise ``recorder.log``
            use_timestamp: Timestamp the generated log file name
            console_output: Echo lines to the console (WARNING and above go to stderr)
            level: Minimum level that is written
        """
        super().__init__(context)
        self.log_dir = Path(log_dir)
        self.console_output = console_output
        self.threshold = LEVEL_ORDER.get(level.upper(), LEVEL_ORDER["INFO"])

        if log_file is not None:
            self.log_file = log_file
        elif use_timestamp:
            self.log_file = f"recorder_{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}.log"
        else:
            self.log_file = "recorder.log"
        self.log_path = self.log_dir / self.log_file

        self._queue: asyncio.Queue[tuple[int, str] | None] = asyncio.Queue()
        self._writer_task: asyncio.Task | None = None

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services) -> None:
        await super().on_start(services)

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._writer_task = asyncio.create_task(self._write_loop())

        await self.info(f"AsyncLoggingService initialized. Logging to: {self.log_path}")

    async def on_close(self) -> None:
        """Write everything still queued, then stop the writer."""
        await super().on_close()

        if self._writer_task is None:
            return

        writer, self._writer_task = self._writer_task, None
        if writer.done():
            # writer stopped early; whatever is left is written here
            await self._write_lines(self._drain_nowait())
            return

        self._queue.put_nowait(_STOP)
        await writer

    # -------------------------------------------------------------- #
    # Public Logging Methods
    # -------------------------------------------------------------- #

    async def log(self, message: str, level: str = "INFO") -> None:
        """
        Queue a line if ``level`` meets the threshold.

        Args:
            message: The log message
            level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        """
        severity = LEVEL_ORDER.get(level, LEVEL_ORDER["INFO"])
        if severity < self.threshold:
            return

        line = f"[{datetime.now().isoformat()}] [{level}] {message}"
        self._queue.put_nowait((severity, line))

    async def debug(self, message: str) -> None:
        await self.log(message, "DEBUG")

    async def info(self, message: str) -> None:
        await self.log(message, "INFO")

    async def warning(self, message: str) -> None:
        await self.log(message, "WARNING")

    async def error(self, message: str) -> None:
        await self.log(message, "ERROR")

    async def critical(self, message: str) -> None:
        await self.log(message, "CRITICAL")

    # -------------------------------------------------------------- #
    # Writer
    # -------------------------------------------------------------- #

    async def _write_loop(self) -> None:
        while True:
            batch = [await self._queue.get()]
            while len(batch) < MAX_BATCH_LINES and not self._queue.empty():
                batch.append(self._queue.get_nowait())

            stop = _STOP in batch
            await self._write_lines([entry for entry in batch if entry is not _STOP])
            if stop:
                return

    def _drain_nowait(self) -> list[tuple[int, str]]:
        entries = []
        with contextlib.suppress(asyncio.QueueEmpty):
            while True:
                entry = self._queue.get_nowait()
                if entry is not _STOP:
                    entries.append(entry)
        return entries

    async def _write_lines(self, entries: list[tuple[int, str]]) -> None:
        if not entries:
            return

        if self.console_output:
            for severity, line in entries:
                stream = sys.stderr if severity >= LEVEL_ORDER["WARNING"] else sys.stdout
                print(line, file=stream, flush=True)

        try:
            async with aiofiles.open(self.log_path, mode="a", encoding="utf-8") as f:
                await f.write("".join(line + "\n" for _, line in entries))
        except OSError as e:
            print(f"[ERROR] Failed to write to log file: {e}", file=sys.stderr, flush=True)
