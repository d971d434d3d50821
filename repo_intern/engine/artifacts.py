"""Per-run artifact storage.

Prompts, raw agent output and parsed feedback are written under a run's
output directory so a failed run can be inspected afterwards. Writes go to a
temporary file first and are renamed into place, so a crash never leaves a
half-written artifact.

Layout::

    <output_dir>/
        git-hook-errors.log
        iteration-1/
            review-prompt.txt
            raw-output.txt
            feedback.json
            fix-prompt.txt
"""

import json
from pathlib import Path
from typing import Any

import aiofiles
import structlog

log = structlog.get_logger(__name__)

HOOK_ERROR_LOG = "git-hook-errors.log"


class ArtifactStore:
    """Writes run artifacts below ``root``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    @property
    def hook_log_path(self) -> Path:
        return self.root / HOOK_ERROR_LOG

    def iteration_dir(self, iteration: int) -> Path:
        return self.root / f"iteration-{iteration}"

    async def write_text(self, relative: str | Path, content: str) -> Path:
        """Atomically write ``content`` to ``root/relative``."""
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")

        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(content)

        tmp_path.replace(path)
        log.debug("artifact_written", path=str(path), size=len(content))
        return path

    async def write_json(self, relative: str | Path, data: Any) -> Path:
        return await self.write_text(relative, json.dumps(data, indent=2, default=str))

    async def read_text(self, relative: str | Path) -> str:
        async with aiofiles.open(self.root / relative, encoding="utf-8") as f:
            return await f.read()
