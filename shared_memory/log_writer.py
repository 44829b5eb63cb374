"""
Durable Log - one JSON file per accepted record.

The log is the source of truth: a record is stored once its file exists,
whatever happens to the vector index afterwards. Files are named
`<category>_<epochMillis>.json` and are never rewritten.
"""

import asyncio
import errno
import json
import logging
import os
import re
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from .errors import PersistenceError

logger = logging.getLogger(__name__)

CONVERSATIONS = "conversations"
OPERATIONAL = "operational"

# os.link errors meaning the filesystem has no hard links at all
_NO_HARD_LINKS = {errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.EMLINK, errno.ENOSYS, errno.EXDEV}


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _create(path: Path, payload: str) -> None:
    try:
        with open(path, "x", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
    except FileExistsError:
        raise
    except OSError:
        path.unlink(missing_ok=True)
        raise


class DurableLog:
    """Append-only, file-per-record log rooted at a directory."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._hard_links = True

    async def ensure_root(self) -> None:
        """Create the log directory if missing. Idempotent."""
        try:
            await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create memory directory {self.root}: {e}") from e

    async def append(self, record: BaseModel, category: str) -> Path:
        """
        Persist a record as a new file.

        Args:
            record: Record model; serialized with its camelCase aliases
            category: File name prefix ("conversations" or "operational")

        Returns:
            Path of the file written

        Raises:
            PersistenceError: If the file could not be created
        """
        payload = record.model_dump_json(by_alias=True, indent=2)
        try:
            return await asyncio.to_thread(self._write, payload, category)
        except OSError as e:
            raise PersistenceError(f"Failed to write {category} record: {e}") from e

    def _write(self, payload: str, category: str) -> Path:
        if not self._hard_links:
            return self._claim(category, lambda path: _create(path, payload))
        # Only fully written files get a log name. os.link refuses an existing
        # name, so a same-millisecond write moves to the next free stamp.
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{category}_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            try:
                return self._claim(category, lambda path: os.link(tmp_name, path))
            except OSError as e:
                if e.errno not in _NO_HARD_LINKS:
                    raise
                logger.warning("Hard links unsupported in %s (%s); creating log files directly", self.root, e)
                self._hard_links = False
                return self._claim(category, lambda path: _create(path, payload))
        finally:
            os.unlink(tmp_name)

    def _claim(self, category: str, create: Callable[[Path], None]) -> Path:
        stamp = _now_ms()
        while True:
            path = self.root / f"{category}_{stamp}.json"
            try:
                create(path)
                return path
            except FileExistsError:
                stamp += 1

    async def entries(self, category: str) -> list[Path]:
        """List a category's log files, newest first."""
        return await asyncio.to_thread(self._entries, category)

    def _entries(self, category: str) -> list[Path]:
        if not self.root.is_dir():
            return []
        pattern = re.compile(rf"^{re.escape(category)}_(\d+)\.json$")
        stamped = []
        for path in self.root.iterdir():
            match = pattern.match(path.name)
            if match:
                stamped.append((int(match.group(1)), path))
        stamped.sort(key=lambda item: item[0], reverse=True)
        return [path for _, path in stamped]

    async def read(self, path: Path) -> dict[str, Any]:
        """Decode a single log file."""
        text = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        return json.loads(text)
