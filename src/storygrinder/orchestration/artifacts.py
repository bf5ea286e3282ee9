"""Per-tool artifact bookkeeping and artifact file writing."""

from __future__ import annotations

import itertools
import logging
import re
import threading
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from ..constants import ARTIFACT_FILE_EXTENSION, ARTIFACT_TIMESTAMP_FORMAT
from ..logging import log_event
from ..time_utils import local_timestamp_for_filename

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def artifact_stem(tool_id: str, timestamp: Optional[str] = None) -> str:
    """Build ``{tool_id}_{YYYYMMDD_HHMMSS}`` with the tool id made filename-safe."""
    safe_tool = _UNSAFE_FILENAME_CHARS.sub("_", tool_id).strip("._") or "run"
    return f"{safe_tool}_{timestamp or local_timestamp_for_filename(ARTIFACT_TIMESTAMP_FORMAT)}"


async def write_artifact(
    output_dir: str,
    tool_id: str,
    text: str,
    *,
    timestamp: Optional[str] = None,
) -> str:
    """Write ``text`` to a fresh file under ``output_dir`` and return its path.

    Names collide when two runs of one tool finish within the same second;
    the file is created exclusively and ``_1``, ``_2``... are tried in turn.

    Raises:
        OSError: directory or file cannot be created
    """
    directory = Path(output_dir).expanduser()
    await aiofiles.os.makedirs(directory, exist_ok=True)
    stem = artifact_stem(tool_id, timestamp)

    for counter in itertools.count():
        name = stem if counter == 0 else f"{stem}_{counter}"
        path = directory / f"{name}{ARTIFACT_FILE_EXTENSION}"
        try:
            async with aiofiles.open(path, "x", encoding="utf-8") as f:
                await f.write(text)
        except FileExistsError:
            continue
        return str(path)
    raise RuntimeError("unreachable")


class ArtifactCache:
    """Maps tools and runs to the files they produced.

    Listings keep insertion order without duplicates. Safe to mutate from
    concurrently finishing runs.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # dicts used as ordered sets
        self._by_tool: dict[str, dict[str, None]] = {}
        self._by_run: dict[str, dict[str, None]] = {}
        self._run_tool: dict[str, str] = {}

    def record_artifact(self, tool_id: str, run_id: str, path: str) -> bool:
        """Record ``path`` for a tool and run. Returns False for a duplicate."""
        with self._lock:
            tool_paths = self._by_tool.setdefault(tool_id, {})
            if path in tool_paths:
                return False
            tool_paths[path] = None
            self._by_run.setdefault(run_id, {})[path] = None
            self._run_tool[run_id] = tool_id

        log_event(
            "artifact_recorded",
            level=logging.INFO,
            tool_id=tool_id,
            run_id=run_id,
            artifact_file=path,
        )
        return True

    def list_artifacts(self, tool_id: str) -> list[str]:
        with self._lock:
            return list(self._by_tool.get(tool_id, {}))

    def list_run_artifacts(self, run_id: str) -> list[str]:
        with self._lock:
            return list(self._by_run.get(run_id, {}))

    def tool_ids(self) -> list[str]:
        with self._lock:
            return [tool_id for tool_id, paths in self._by_tool.items() if paths]

    def clear(self, tool_id: str) -> int:
        """Forget every artifact of one tool. Files on disk are left alone."""
        with self._lock:
            removed = len(self._by_tool.pop(tool_id, {}))
            for run_id in [r for r, t in self._run_tool.items() if t == tool_id]:
                del self._run_tool[run_id]
                self._by_run.pop(run_id, None)

        log_event("artifacts_cleared", level=logging.INFO, tool_id=tool_id, count=removed)
        return removed

    def clear_all(self) -> int:
        """Forget every artifact of every tool."""
        with self._lock:
            removed = sum(len(paths) for paths in self._by_tool.values())
            self._by_tool.clear()
            self._by_run.clear()
            self._run_tool.clear()

        log_event("artifacts_cleared", level=logging.INFO, tool_id="*", count=removed)
        return removed
