# hedgearb/store.py
import asyncio
import json
import logging
import os
from typing import Any, Optional

import aiofiles
import aiofiles.os


class JsonStore:
    """
    Key -> JSON file persistence for positions and history.
    Writes go to a temp file that replaces the target, so a crash mid-write
    leaves the previous snapshot readable.
    """
    def __init__(self, directory: str, logger: Optional[logging.Logger] = None):
        self.directory = directory
        self.logger = logger or logging.getLogger("hedgearb.store")
        self._lock = asyncio.Lock()

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    async def load(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not os.path.exists(path):
            return default
        try:
            async with aiofiles.open(path, mode='r') as f:
                return json.loads(await f.read())
        except (OSError, ValueError) as e:
            self.logger.error(f"❌ Failed to load {key}: {e}")
            return default

    async def save(self, key: str, data: Any):
        path = self._path(key)
        tmp = f"{path}.tmp"
        async with self._lock:
            os.makedirs(self.directory, exist_ok=True)
            async with aiofiles.open(tmp, mode='w') as f:
                await f.write(json.dumps(data, indent=2, default=str))
            await aiofiles.os.replace(tmp, path)
