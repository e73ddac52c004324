# hedgearb/logger.py
import asyncio
import aiofiles
from aiocsv import AsyncWriter
import logging
import sys
import os
from typing import List, Any, Optional

AUDIT_HEADER = [
    'timestamp', 'trade_id', 'event', 'instrument', 'spot_venue', 'futures_venue',
    'amount', 'spot_price', 'futures_price', 'size_usd', 'net_spread_pct', 'outcome', 'detail',
]


class AsyncAuditLogger:
    """
    Non-blocking CSV audit trail of trade openings, failures and closes.
    Decouples disk I/O from the trading loop using an asyncio Queue.
    """
    def __init__(self, filepath: str, header: Optional[List[str]] = None):
        self.filepath = filepath
        self.header = header if header is not None else AUDIT_HEADER
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """
        Creates the file (with header row if new) and starts the background writer.
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

    async def flush(self):
        await self._queue.join()

    async def stop(self):
        if self._worker_task is None:
            return
        await self.flush()
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
            except Exception as e:
                # Disk trouble must never reach the trading loop
                print(f"AUDIT LOG FAILURE: {e}", file=sys.stderr)
            finally:
                self._queue.task_done()


def setup_console_logger(name: str, level: str):
    """
    Sets up the standard Python logger for console output.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
