"""MCP tools that download build logs and artifacts and manage the staged files."""

import logfire
from datetime import timedelta
from loguru import logger
from mcp.server.fastmcp.server import Context, FastMCP
from tl.ado_build_mcp_server.ado_tools import log_tool_error
from tl.ado_build_mcp_server.downloads import BuildDownloader
from tl.ado_build_mcp_server.models import (
    ADOCleanupDownloadsResponse,
    ADODownloadLocationResponse,
    ADODownloadResponse,
    ADOListDownloadsResponse,
)
from tl.ado_build_mcp_server.temp_manager import (
    DownloadCategory,
    TempDownloadManager,
    coerce_category,
)
from typing import Any, Dict, Optional

DEFAULT_CLEANUP_AGE_HOURS = 24


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ('B', 'KB', 'MB'):
        if value < 1024:
            return f'{size} B' if unit == 'B' else f'{value:.1f} {unit}'
        value /= 1024
    return f'{value:.1f} GB'


class DownloadTools:
    """Tools that write build logs and artifacts to disk and manage the staging area."""

    def __init__(
        self, mcp: FastMCP, downloader: BuildDownloader, temp_manager: TempDownloadManager
    ) -> None:
        """Initialize the download tools.

        Args:
            mcp: The MCP server instance
            downloader: Fetches logs and artifacts for a build
            temp_manager: Staging area shared by every download tool
        """
        self.mcp = mcp
        self.downloader = downloader
        self.temp_manager = temp_manager

        self.mcp.tool(
            name='build_download_job_logs',
            description='Download the log of a specific job in a build by its exact job name. '
            'Saves to a temporary directory unless output_path is given.',
        )(self.build_download_job_logs)
        self.mcp.tool(
            name='build_download_logs_by_name',
            description='Download logs for a stage, job or task by name from the build timeline. '
            'A stage downloads the logs of all of its jobs.',
        )(self.build_download_logs_by_name)
        self.mcp.tool(
            name='build_download_artifact',
            description='Download a Pipeline artifact of a build as a ZIP file. '
            'Only artifacts published with PublishPipelineArtifact are supported.',
        )(self.build_download_artifact)
        self.mcp.tool(
            name='list_downloads',
            description='List files downloaded to the temporary directory by this server',
        )(self.list_downloads)
        self.mcp.tool(
            name='cleanup_downloads',
            description='Remove downloaded files from the temporary directory. Without filters, '
            f'removes files older than {DEFAULT_CLEANUP_AGE_HOURS} hours.',
        )(self.cleanup_downloads)
        self.mcp.tool(
            name='get_download_location',
            description='Show where temporary downloads are stored and how much space they use',
        )(self.get_download_location)

    def build_download_job_logs(
        self,
        ctx: Context,
        build_id: int,
        job_name: str,
        output_path: Optional[str] = None,
    ) -> ADODownloadResponse:
        """Download the log of one job.

        Args:
            ctx: The FastMCP context
            build_id: ID of the build
            job_name: Exact name of the job, e.g. "Build" or "Test"
            output_path: Optional file or directory to save to; a temporary
                directory is used otherwise

        Returns:
            ADODownloadResponse describing the saved log
        """
        try:
            if not job_name or not job_name.strip():
                raise ValueError('Job name is required')

            download_info = self.downloader.download_job_log(build_id, job_name, output_path)

            logger.info(f'Downloaded log for job {job_name} of build {build_id}')
            logfire.info(
                'Downloaded job log',
                build_id=build_id,
                job_name=job_name,
                saved_path=download_info['saved_path'],
                file_size=download_info['file_size'],
            )

            return ADODownloadResponse(
                status='success',
                message=f'Successfully downloaded log for job {job_name}',
                download_info=download_info,
            )

        except Exception as e:
            error_message, error_type = log_tool_error('downloading job log', e)
            return ADODownloadResponse(
                status='error', message=error_message, download_info={}, error_type=error_type
            )

    def build_download_logs_by_name(
        self,
        ctx: Context,
        build_id: int,
        name: str,
        output_path: Optional[str] = None,
        exact_match: Optional[bool] = True,
    ) -> ADODownloadResponse:
        """Download the logs of the stage, job or task with the given name.

        Args:
            ctx: The FastMCP context
            build_id: ID of the build
            name: Name of the stage, job or task
            output_path: Optional file or directory to save to
            exact_match: Require an exact name match; otherwise match case-insensitively
                on part of the name

        Returns:
            ADODownloadResponse listing every log saved and any that failed
        """
        try:
            download_info = self.downloader.download_logs_by_name(
                build_id, name, output_path, exact_match=exact_match is not False
            )
            downloaded = len(download_info['downloaded_logs'])
            failed = len(download_info['failed_logs'])

            logger.info(f'Downloaded {downloaded} log(s) for {download_info["type"]} {name}')
            logfire.info(
                'Downloaded logs by name',
                build_id=build_id,
                name=name,
                record_type=download_info['type'],
                downloaded=downloaded,
                failed=failed,
            )

            message = f'Successfully downloaded {downloaded} log(s) for {download_info["type"]} {name}'
            if failed:
                message = f'{message}; {failed} log(s) failed'
            return ADODownloadResponse(
                status='success', message=message, download_info=download_info
            )

        except Exception as e:
            error_message, error_type = log_tool_error('downloading logs by name', e)
            return ADODownloadResponse(
                status='error', message=error_message, download_info={}, error_type=error_type
            )

    def build_download_artifact(
        self,
        ctx: Context,
        build_id: int,
        artifact_name: str,
        definition_id: Optional[int] = None,
        output_path: Optional[str] = None,
    ) -> ADODownloadResponse:
        """Download a Pipeline artifact as a ZIP file.

        Args:
            ctx: The FastMCP context
            build_id: ID of the build (pipeline run)
            artifact_name: Name of the artifact, see build_list_artifacts
            definition_id: Pipeline definition ID; looked up from the build when omitted
            output_path: Optional file or directory to save to

        Returns:
            ADODownloadResponse describing the saved archive
        """
        try:
            if not artifact_name or not artifact_name.strip():
                raise ValueError('Artifact name is required')

            download_info = self.downloader.download_artifact(
                build_id, artifact_name, definition_id=definition_id, output_path=output_path
            )

            logger.info(f'Downloaded artifact {artifact_name} of build {build_id}')
            logfire.info(
                'Downloaded artifact',
                build_id=build_id,
                artifact_name=artifact_name,
                saved_path=download_info['saved_path'],
                file_size=download_info['file_size'],
            )

            return ADODownloadResponse(
                status='success',
                message=f'Successfully downloaded artifact {artifact_name}',
                download_info=download_info,
            )

        except Exception as e:
            error_message, error_type = log_tool_error('downloading artifact', e)
            return ADODownloadResponse(
                status='error', message=error_message, download_info={}, error_type=error_type
            )

    def list_downloads(
        self,
        ctx: Context,
        category: Optional[str] = None,
        build_id: Optional[int] = None,
    ) -> ADOListDownloadsResponse:
        """List staged downloads.

        Args:
            ctx: The FastMCP context
            category: Only list one of logs-by-name, job-logs, artifacts
            build_id: Only list files of this build

        Returns:
            ADOListDownloadsResponse with the files and totals per category
        """
        location = str(self.temp_manager.get_location())
        try:
            entries = self.temp_manager.list_downloads(
                category=coerce_category(category) if category else None, build_id=build_id
            )

            by_category: Dict[str, Dict[str, Any]] = {
                c.value: {'count': 0, 'size': 0} for c in DownloadCategory
            }
            for entry in entries:
                by_category[entry.category.value]['count'] += 1
                by_category[entry.category.value]['size'] += entry.size
            total_size = sum(entry.size for entry in entries)
            summary = {
                'total_files': len(entries),
                'total_size': total_size,
                'total_size_formatted': _format_size(total_size),
                'by_category': by_category,
            }

            logger.info(f'Listed {len(entries)} staged download(s)')
            logfire.info('Listed downloads', count=len(entries), category=category, build_id=build_id)

            return ADOListDownloadsResponse(
                status='success',
                message=f'Found {len(entries)} downloaded file(s)',
                location=location,
                summary=summary,
                downloads=[entry.to_dict() for entry in entries],
            )

        except Exception as e:
            error_message, error_type = log_tool_error('listing downloads', e)
            return ADOListDownloadsResponse(
                status='error',
                message=error_message,
                location=location,
                summary={},
                downloads=[],
                error_type=error_type,
            )

    def cleanup_downloads(
        self,
        ctx: Context,
        older_than_hours: Optional[float] = None,
        category: Optional[str] = None,
        build_id: Optional[int] = None,
    ) -> ADOCleanupDownloadsResponse:
        """Remove staged downloads.

        Without any filter, files older than 24 hours are removed.

        Args:
            ctx: The FastMCP context
            older_than_hours: Only remove files older than this many hours
            category: Only remove one of logs-by-name, job-logs, artifacts
            build_id: Only remove files of this build

        Returns:
            ADOCleanupDownloadsResponse with counts, bytes freed and per-file errors
        """
        try:
            if older_than_hours is not None and older_than_hours < 0:
                raise ValueError('older_than_hours must not be negative')
            if older_than_hours is None and category is None and build_id is None:
                older_than_hours = DEFAULT_CLEANUP_AGE_HOURS

            result = self.temp_manager.cleanup_downloads(
                category=coerce_category(category) if category else None,
                build_id=build_id,
                older_than=timedelta(hours=older_than_hours) if older_than_hours is not None else None,
            )

            logfire.info(
                'Cleaned up downloads',
                files_removed=result.files_removed,
                dirs_removed=result.dirs_removed,
                space_saved=result.space_saved,
                errors=len(result.errors),
            )

            message = (
                f'Removed {result.files_removed} file(s), '
                f'freed {_format_size(result.space_saved)}'
            )
            if result.errors:
                message = f'{message}; {len(result.errors)} item(s) could not be removed'
            return ADOCleanupDownloadsResponse(
                status='partial' if result.errors else 'success',
                message=message,
                files_removed=result.files_removed,
                dirs_removed=result.dirs_removed,
                space_saved=result.space_saved,
                errors=result.errors,
            )

        except Exception as e:
            error_message, error_type = log_tool_error('cleaning up downloads', e)
            return ADOCleanupDownloadsResponse(
                status='error',
                message=error_message,
                files_removed=0,
                dirs_removed=0,
                space_saved=0,
                errors=[],
                error_type=error_type,
            )

    def get_download_location(self, ctx: Context) -> ADODownloadLocationResponse:
        """Describe the staging directory of this server process."""
        try:
            info = self.temp_manager.get_location_info()

            logfire.info(
                'Download location requested',
                path=str(info.path),
                file_count=info.file_count,
                total_size=info.total_size,
            )

            return ADODownloadLocationResponse(
                status='success',
                message=f'Temporary downloads are stored in {info.path}',
                path=str(info.path),
                exists=info.exists,
                total_size=info.total_size,
                file_count=info.file_count,
                oldest_file=info.oldest_file.to_dict() if info.oldest_file else None,
            )

        except Exception as e:
            error_message, error_type = log_tool_error('getting download location', e)
            return ADODownloadLocationResponse(
                status='error',
                message=error_message,
                path=str(self.temp_manager.get_location()),
                exists=False,
                total_size=0,
                file_count=0,
                error_type=error_type,
            )
