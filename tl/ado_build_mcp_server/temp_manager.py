"""Download staging area for build logs and artifacts.

Files fetched by the download tools land under a process-scoped root in the
platform temp directory:

    {tmp}/ado-mcp-server-{pid}/downloads/{category}/{build_id}/{filename}

The manager hands out those paths, remembers what it wrote, lists and cleans
up the staged files, and on startup purges roots abandoned by earlier server
processes that never ran their exit handler.
"""

import atexit
import logfire
import os
import re
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from loguru import logger
from pathlib import Path
from tl.ado_build_mcp_server.exceptions import FilesystemError, InvalidPathError
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Union

ROOT_PREFIX = 'ado-mcp-server'
DOWNLOADS_DIR = 'downloads'
DEFAULT_STALE_AFTER = timedelta(hours=24)
PARTIAL_SUFFIX = '.part'

_UNSAFE_FILENAME_CHARS = re.compile(r'[^a-zA-Z0-9.\-_]')
# Also matches the older mkdtemp-style roots: ado-mcp-server-{pid}-{suffix}
_ROOT_NAME_PATTERN = re.compile(rf'^{ROOT_PREFIX}-(\d+)(?:-.+)?$')


class DownloadCategory(str, Enum):
    """Subdirectory of the staging root a download is filed under."""

    LOGS_BY_NAME = 'logs-by-name'
    JOB_LOGS = 'job-logs'
    ARTIFACTS = 'artifacts'


@dataclass(frozen=True)
class DownloadEntry:
    """A single file written by one of the download tools."""

    path: Path
    build_id: int
    category: DownloadCategory
    created_at: datetime
    size: int
    is_temporary: bool = True

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def age_hours(self) -> float:
        return (datetime.now(timezone.utc) - self.created_at).total_seconds() / 3600

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': str(self.path),
            'category': self.category.value,
            'build_id': self.build_id,
            'filename': self.filename,
            'size': self.size,
            'downloaded_at': self.created_at.isoformat(),
            'age_hours': round(self.age_hours, 1),
            'is_temporary': self.is_temporary,
        }


class ResolvedPath(NamedTuple):
    path: Path
    is_temporary: bool


@dataclass
class CleanupResult:
    files_removed: int = 0
    dirs_removed: int = 0
    space_saved: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class DownloadLocationInfo:
    path: Path
    exists: bool
    total_size: int
    file_count: int
    oldest_file: Optional[DownloadEntry] = None


def sanitize_filename(filename: str) -> str:
    """Replace every character outside ``[A-Za-z0-9._-]`` with ``-``.

    Raises:
        InvalidPathError: If the name is empty or would refer to a directory.
    """
    if not isinstance(filename, str) or not filename.strip():
        raise InvalidPathError('Filename must be a non-empty string')

    sanitized = _UNSAFE_FILENAME_CHARS.sub('-', filename)
    if sanitized in ('.', '..'):
        raise InvalidPathError(f'Filename {filename!r} is not a valid file name')
    return sanitized


def partial_path(path: Path) -> Path:
    """Return the sibling path a download is streamed into before it replaces ``path``."""
    return path.with_name(path.name + PARTIAL_SUFFIX)


def coerce_category(category: Union[str, DownloadCategory]) -> DownloadCategory:
    try:
        return DownloadCategory(category)
    except ValueError:
        valid = ', '.join(c.value for c in DownloadCategory)
        raise ValueError(f'Invalid category: {category}. Must be one of: {valid}') from None


def _validate_build_id(build_id: int) -> None:
    if isinstance(build_id, bool) or not isinstance(build_id, int) or build_id <= 0:
        raise ValueError(f'Invalid build_id: {build_id}. Must be a positive integer.')


def _make_dirs(directory: Path) -> None:
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(directory, e) from e


def _newest_mtime(root: Path) -> float:
    newest = root.stat().st_mtime
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            try:
                newest = max(newest, os.lstat(os.path.join(dirpath, name)).st_mtime)
            except OSError:
                continue
    return newest


class TempDownloadManager:
    """Owns the staging tree of one server process.

    One instance is created at server startup and handed to every tool that
    writes or inspects downloads.
    """

    def __init__(
        self,
        temp_root: Optional[Union[str, os.PathLike]] = None,
        pid: Optional[int] = None,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ) -> None:
        """Initialize the download manager.

        Args:
            temp_root: Directory the process root is created in (defaults to the
                platform temp directory)
            pid: Process identifier embedded in the root name (defaults to ours)
            stale_after: Age after which a sibling root counts as abandoned
        """
        if temp_root is None:
            temp_root = Path(tempfile.gettempdir()).resolve()
        self.temp_root = Path(temp_root)
        self.pid = os.getpid() if pid is None else pid
        self.stale_after = stale_after
        self.root = self.temp_root / f'{ROOT_PREFIX}-{self.pid}'

        self._entries: Dict[Path, DownloadEntry] = {}
        self._lock = threading.Lock()
        self._exit_handler_installed = False

    @property
    def downloads_dir(self) -> Path:
        return self.root / DOWNLOADS_DIR

    def get_location(self) -> Path:
        """Return the process root. The directory may not exist yet."""
        return self.root

    def resolve_output_path(
        self,
        category: Union[str, DownloadCategory],
        build_id: int,
        suggested_filename: str,
        explicit_output_path: Optional[Union[str, os.PathLike]] = None,
    ) -> ResolvedPath:
        """Work out where a download should be written and create its directory.

        Args:
            category: Staging category of the download
            build_id: Build the download belongs to
            suggested_filename: File name to use inside the target directory
            explicit_output_path: Optional user-supplied file or directory path.
                A trailing separator or an existing directory means "put the
                file in here"; anything else is the destination file itself.

        Returns:
            ResolvedPath with the absolute target path, flagged temporary only
            when it lies in the managed staging tree

        Raises:
            InvalidPathError: Empty explicit path or unusable filename
            FilesystemError: A directory could not be created
            ValueError: Unknown category or non-positive build id
        """
        category = coerce_category(category)
        _validate_build_id(build_id)
        filename = sanitize_filename(suggested_filename)

        if explicit_output_path is not None:
            return ResolvedPath(self._resolve_explicit(explicit_output_path, filename), False)

        if not self.root.exists():
            logger.info(f'Creating download staging root {self.root}')
        build_dir = self.downloads_dir / category.value / str(build_id)
        _make_dirs(build_dir)
        return ResolvedPath(build_dir / filename, True)

    def _resolve_explicit(self, output_path: Union[str, os.PathLike], filename: str) -> Path:
        output_path = os.fspath(output_path)
        if not output_path.strip():
            raise InvalidPathError('Output path must be a non-empty string')

        expanded = os.path.expanduser(output_path)
        target = Path(os.path.abspath(expanded))

        if expanded.endswith(('/', os.sep)) or target.is_dir():
            _make_dirs(target)
            return target / filename

        _make_dirs(target.parent)
        return target

    def record_download(self, entry: DownloadEntry) -> None:
        """Remember a finished download. A later entry for the same path replaces it."""
        with self._lock:
            self._entries[entry.path] = entry

    def record_file(
        self,
        path: Union[str, os.PathLike],
        category: Union[str, DownloadCategory],
        build_id: int,
        is_temporary: bool = True,
    ) -> DownloadEntry:
        """Stat a freshly written file and record it.

        Returns:
            The recorded DownloadEntry
        """
        path = Path(path)
        try:
            stat = path.stat()
        except OSError as e:
            raise FilesystemError(path, e) from e

        entry = DownloadEntry(
            path=path,
            build_id=build_id,
            category=coerce_category(category),
            created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            size=stat.st_size,
            is_temporary=is_temporary,
        )
        self.record_download(entry)
        return entry

    def list_downloads(
        self,
        category: Optional[Union[str, DownloadCategory]] = None,
        build_id: Optional[int] = None,
    ) -> List[DownloadEntry]:
        """List downloads that still exist on disk, oldest first.

        Staged files are found by scanning the managed tree; files written to
        explicit paths come from the registry. Registry entries whose file has
        disappeared are dropped.
        """
        if category is not None:
            category = coerce_category(category)

        found: Dict[Path, DownloadEntry] = {entry.path: entry for entry in self._scan()}

        with self._lock:
            for path, entry in list(self._entries.items()):
                if not path.is_file():
                    del self._entries[path]
                elif path not in found:
                    found[path] = entry

        entries = [
            entry
            for entry in found.values()
            if (category is None or entry.category is category)
            and (build_id is None or entry.build_id == build_id)
        ]
        entries.sort(key=lambda e: (e.created_at, str(e.path)))
        return entries

    def _scan(self) -> Iterator[DownloadEntry]:
        for category in DownloadCategory:
            category_dir = self.downloads_dir / category.value
            if not category_dir.is_dir():
                continue

            try:
                build_dirs = [d for d in category_dir.iterdir() if d.is_dir()]
            except OSError as e:
                logger.warning(f'Failed to read download category {category_dir}: {e}')
                continue

            for build_dir in build_dirs:
                if not (build_dir.name.isascii() and build_dir.name.isdigit()):
                    continue
                try:
                    files = list(build_dir.iterdir())
                except OSError as e:
                    logger.warning(f'Failed to read download directory {build_dir}: {e}')
                    continue

                for file_path in files:
                    try:
                        stat = file_path.stat()
                    except OSError:
                        continue
                    if not file_path.is_file() or file_path.name.endswith(PARTIAL_SUFFIX):
                        continue
                    yield DownloadEntry(
                        path=file_path,
                        build_id=int(build_dir.name),
                        category=category,
                        created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                        size=stat.st_size,
                        is_temporary=True,
                    )

    def _is_managed(self, path: Path) -> bool:
        return path.is_relative_to(self.downloads_dir)

    def cleanup_downloads(
        self,
        category: Optional[Union[str, DownloadCategory]] = None,
        build_id: Optional[int] = None,
        older_than: Optional[timedelta] = None,
    ) -> CleanupResult:
        """Delete staged files matching the filters.

        Only files inside the managed staging tree are touched. A build
        directory left empty is removed as well. Failures on single files are
        collected in ``CleanupResult.errors`` and do not stop the sweep.

        Args:
            category: Only remove files of this category
            build_id: Only remove files of this build
            older_than: Only remove files last written longer ago than this

        Returns:
            CleanupResult summarising what was removed
        """
        result = CleanupResult()
        cutoff = datetime.now(timezone.utc) - older_than if older_than is not None else None

        for entry in self.list_downloads(category=category, build_id=build_id):
            if not self._is_managed(entry.path):
                continue
            if cutoff is not None and entry.created_at > cutoff:
                continue

            try:
                entry.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                result.errors.append(f'Failed to remove {entry.path}: {e}')
                continue
            else:
                result.files_removed += 1
                result.space_saved += entry.size

            with self._lock:
                self._entries.pop(entry.path, None)

        self._remove_empty_build_dirs(category, build_id, result)

        logger.info(
            f'Cleanup removed {result.files_removed} file(s), '
            f'{result.space_saved} bytes, {len(result.errors)} error(s)'
        )
        return result

    def _remove_empty_build_dirs(
        self,
        category: Optional[Union[str, DownloadCategory]],
        build_id: Optional[int],
        result: CleanupResult,
    ) -> None:
        categories = list(DownloadCategory) if category is None else [coerce_category(category)]
        for cat in categories:
            category_dir = self.downloads_dir / cat.value
            if not category_dir.is_dir():
                continue
            try:
                if build_id is not None:
                    build_dirs = [category_dir / str(build_id)]
                else:
                    build_dirs = list(category_dir.iterdir())
            except OSError as e:
                result.errors.append(f'Failed to read directory {category_dir}: {e}')
                continue

            for build_dir in build_dirs:
                try:
                    if not build_dir.is_dir() or any(build_dir.iterdir()):
                        continue
                    build_dir.rmdir()
                except OSError as e:
                    result.errors.append(f'Failed to remove directory {build_dir}: {e}')
                else:
                    result.dirs_removed += 1

    def is_stale(self, root: Path, now: Optional[float] = None) -> bool:
        """Return True when nothing under ``root`` was modified within ``stale_after``."""
        now = time.time() if now is None else now
        return now - _newest_mtime(root) > self.stale_after.total_seconds()

    def purge_stale_roots(self) -> int:
        """Remove staging roots abandoned by earlier server processes.

        Runs once at startup. Roots carrying this process's pid are never
        touched. Failures are logged and skipped so startup always proceeds.

        Returns:
            Number of roots removed
        """
        try:
            candidates = list(self.temp_root.iterdir())
        except OSError as e:
            logger.warning(f'Failed to scan {self.temp_root} for stale download roots: {e}')
            logfire.warn('Stale download root scan failed', temp_root=str(self.temp_root), error=str(e))
            return 0

        removed = 0
        for candidate in candidates:
            match = _ROOT_NAME_PATTERN.match(candidate.name)
            if not match or int(match.group(1)) == self.pid:
                continue
            if candidate.is_symlink() or not candidate.is_dir():
                continue

            try:
                if not self.is_stale(candidate):
                    continue
                shutil.rmtree(candidate)
            except OSError as e:
                logger.warning(f'Failed to remove stale download root {candidate}: {e}')
                logfire.warn('Stale download root not removed', path=str(candidate), error=str(e))
                continue

            removed += 1
            logger.info(f'Removed stale download root {candidate}')

        if removed:
            logfire.info('Purged stale download roots', count=removed, temp_root=str(self.temp_root))
        return removed

    def get_location_info(self) -> DownloadLocationInfo:
        """Describe the staging root. Files saved to explicit paths are not counted."""
        downloads = [entry for entry in self.list_downloads() if self._is_managed(entry.path)]
        return DownloadLocationInfo(
            path=self.root,
            exists=self.root.is_dir(),
            total_size=sum(entry.size for entry in downloads),
            file_count=len(downloads),
            oldest_file=min(downloads, key=lambda e: e.created_at, default=None),
        )

    def remove_root(self) -> None:
        """Best-effort removal of this process's staging root."""
        with self._lock:
            self._entries.clear()
        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning(f'Failed to remove download staging root {self.root}: {e}')
            return
        logger.info(f'Removed download staging root {self.root}')

    def install_exit_handler(self) -> None:
        """Register ``remove_root`` to run at interpreter exit (once)."""
        if self._exit_handler_installed:
            return
        atexit.register(self.remove_root)
        self._exit_handler_installed = True
