"""Durable storage for the pool document."""

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

import aiofiles

from keypool.errors import PersistenceFailure
from keypool.models import RESET_NEVER

logger = logging.getLogger(__name__)


def default_document(default_max_usage: int) -> Dict[str, Any]:
    return {
        "services": {},
        "defaultServiceConfig": {
            "maxUsage": default_max_usage,
            "resetFrequency": RESET_NEVER,
        },
    }


class PoolStore(Protocol):
    async def load(self) -> Optional[Dict[str, Any]]: ...

    async def save(self, document: Dict[str, Any]) -> None: ...


class JsonFileStore:
    """Stores the pool as one pretty-printed JSON file.

    Writes go to a temporary file next to the target and are moved into place
    with ``os.replace``, so readers never see a half-written document.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    async def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None

        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                content = await f.read()
        except OSError as exc:
            logger.error("Cannot read key pool file %s: %s", self.path, exc)
            raise PersistenceFailure(f"Cannot read {self.path}: {exc}") from exc

        if not content.strip():
            return None

        try:
            document = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.error("Corrupted key pool file %s: %s", self.path, exc)
            raise PersistenceFailure(f"Corrupted key pool file {self.path}") from exc

        if not isinstance(document, dict):
            raise PersistenceFailure(f"Key pool file {self.path} is not a JSON object")
        return document

    async def save(self, document: Dict[str, Any]) -> None:
        content = json.dumps(document, indent=2)
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=".tmp_", suffix=".json"
            )
            os.close(tmp_fd)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(content)
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as exc:
            logger.error("Error saving key pool file %s: %s", self.path, exc)
            raise PersistenceFailure(f"Cannot write {self.path}: {exc}") from exc
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)


class MemoryStore:
    """Keeps the document in memory. Used by tests and throwaway pools."""

    def __init__(self, document: Optional[Dict[str, Any]] = None):
        self.document = copy.deepcopy(document)
        self.saves = 0
        self.fail_saves = False

    async def load(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self.document)

    async def save(self, document: Dict[str, Any]) -> None:
        if self.fail_saves:
            raise PersistenceFailure("Memory store is refusing writes")
        self.document = copy.deepcopy(document)
        self.saves += 1
