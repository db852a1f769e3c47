# spreadarb/logger.py
import asyncio
import logging
import os
import sys
from typing import Any, List, Optional, Sequence

import aiofiles
from aiocsv import AsyncWriter

APP_LOGGER = "SpreadArb"


class AsyncAuditLogger:
    """
    Non-blocking CSV writer for the trade history.
    Decouples disk I/O from the trading loop using an asyncio Queue.
    """
    def __init__(self, filepath: str, header: Optional[Sequence[str]] = None):
        self.filepath = filepath
        self.header = list(header) if header else None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """
        Creates the directory and the file (with its header row) if missing,
        then starts the background writer.
        """
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        is_new = not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0
        async with aiofiles.open(self.filepath, mode='a', newline='') as f:
            if is_new and self.header:
                writer = AsyncWriter(f, dialect='unix')
                await writer.writerow(self.header)

        self._worker_task = asyncio.create_task(self._writer_worker())

    async def log_trade(self, data: List[Any]):
        """
        Non-blocking call to add a trade record to the queue.
        """
        await self._queue.put(data)

    async def stop(self):
        """Flushes queued rows, then stops the writer."""
        if self._worker_task is None:
            return
        await self._queue.join()
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None

    async def _writer_worker(self):
        while True:
            row = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(row)
            except OSError as e:
                # Losing a history row must not take the bot down
                logging.getLogger(APP_LOGGER).error(f"Unable to write trade history to {self.filepath}: {e}")
            finally:
                self._queue.task_done()


def setup_console_logger(name: str = APP_LOGGER, level: str = "INFO") -> logging.Logger:
    """
    Sets up the standard Python logger for console output.
    Child loggers (e.g. 'SpreadArb.volume') share its handler.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
