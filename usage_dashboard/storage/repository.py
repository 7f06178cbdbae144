"""
Repository pattern for log access.

Walks the projects directory and reads every interaction log concurrently.
"""

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

import aiofiles
import aiofiles.os

from usage_dashboard.core.errors import ErrorCode

from .models import ProjectScan, RawLogRecord
from .parsers import parse_log_bytes

logger = logging.getLogger(__name__)

LOG_FILE_SUFFIX = ".jsonl"


class ProjectsDirectoryError(Exception):
    """The projects root cannot be used at all."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class LogRepository:
    """Read-only access to the per-project interaction logs.

    Each immediate subdirectory of the root is one project; each ``.jsonl``
    file inside it is one append-only log.
    """

    def __init__(self, root: str):
        """Initialize the repository with the projects root.

        Args:
            root: Directory holding one subdirectory per project
        """
        self.root = Path(os.path.expanduser(str(root)))

    async def list_projects(self) -> List[Path]:
        """List project directories under the root.

        Raises:
            ProjectsDirectoryError: If the root is missing or unreadable
        """
        if not await aiofiles.os.path.isdir(self.root):
            raise ProjectsDirectoryError(
                ErrorCode.PROJECTS_DIR_NOT_FOUND,
                f"Projects directory not found: {self.root}",
            )
        try:
            names = await aiofiles.os.listdir(self.root)
        except OSError as e:
            raise ProjectsDirectoryError(
                ErrorCode.PROJECTS_DIR_UNREADABLE,
                f"Projects directory is not readable: {self.root} ({e.strerror or e})",
            ) from e

        candidates = [self.root / name for name in sorted(names)]
        flags = await asyncio.gather(*(aiofiles.os.path.isdir(p) for p in candidates))
        return [path for path, is_dir in zip(candidates, flags) if is_dir]

    async def _read_log_file(self, path: Path) -> Tuple[RawLogRecord, ...]:
        async with aiofiles.open(path, mode="rb") as f:
            data = await f.read()
        return parse_log_bytes(data).records

    async def scan_project(self, project_dir: Path) -> ProjectScan:
        """Read every log of one project.

        A read failure anywhere in the project is logged and the project
        contributes nothing; sibling projects are unaffected.
        """
        try:
            names = await aiofiles.os.listdir(project_dir)
            files = [project_dir / n for n in sorted(names) if n.endswith(LOG_FILE_SUFFIX)]
            per_file = await asyncio.gather(*(self._read_log_file(f) for f in files))
        except OSError as e:
            logger.warning("Skipping project %s: %s", project_dir.name, e)
            return ProjectScan(
                name=project_dir.name,
                path=str(project_dir),
                records=(),
                message_count=0,
                last_activity=None,
                error=str(e),
            )

        records = tuple(record for file_records in per_file for record in file_records)
        last_activity: Optional[datetime] = None
        for record in records:
            if record.timestamp is not None and (last_activity is None or record.timestamp > last_activity):
                last_activity = record.timestamp

        logger.debug(
            "Read %d records from %d files in project %s",
            len(records), len(files), project_dir.name,
        )
        return ProjectScan(
            name=project_dir.name,
            path=str(project_dir),
            records=records,
            message_count=len(records),
            last_activity=last_activity,
        )

    async def scan_all(self) -> List[ProjectScan]:
        """Scan every project concurrently; results keep directory order."""
        projects = await self.list_projects()
        logger.info("Found %d project directories in %s", len(projects), self.root)
        return list(await asyncio.gather(*(self.scan_project(p) for p in projects)))
