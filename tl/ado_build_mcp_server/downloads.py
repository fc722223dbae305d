"""Download logs and artifacts of a build into the staging area or a user path."""

import os
from loguru import logger
from pathlib import Path
from tl.ado_build_mcp_server.ado_client import AzureDevOpsClient
from tl.ado_build_mcp_server.exceptions import AdoApiError, FilesystemError, NotFoundError
from tl.ado_build_mcp_server.formatters import format_duration
from tl.ado_build_mcp_server.temp_manager import (
    DownloadCategory,
    TempDownloadManager,
    partial_path,
    sanitize_filename,
)
from typing import Any, Callable, Dict, List, Optional

SEARCHABLE_RECORD_TYPES = ('Stage', 'Phase', 'Job', 'Task')


def _record_summary(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': record.get('id'),
        'name': record.get('name'),
        'type': record.get('type'),
        'state': record.get('state'),
        'result': record.get('result'),
        'parent_id': record.get('parentId'),
        'log_id': (record.get('log') or {}).get('id'),
    }


def _log_id(record: Dict[str, Any]) -> Optional[int]:
    return (record.get('log') or {}).get('id')


class BuildDownloader:
    """Fetches build logs and pipeline artifacts and records them with the manager."""

    def __init__(self, client: AzureDevOpsClient, temp_manager: TempDownloadManager) -> None:
        self.client = client
        self.temp_manager = temp_manager

    def _download(
        self,
        category: DownloadCategory,
        build_id: int,
        filename: str,
        output_path: Optional[str],
        fetch: Callable[[Path], int],
    ) -> Dict[str, Any]:
        resolved = self.temp_manager.resolve_output_path(category, build_id, filename, output_path)

        # Write beside the target so a failed fetch never touches an existing file
        partial = partial_path(resolved.path)
        try:
            fetch(partial)
            os.replace(partial, resolved.path)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise FilesystemError(resolved.path, e) from e
        except Exception:
            partial.unlink(missing_ok=True)
            raise

        entry = self.temp_manager.record_file(
            resolved.path, category, build_id, is_temporary=resolved.is_temporary
        )
        logger.info(f'Saved {entry.size} bytes for build {build_id} to {entry.path}')
        return {
            'saved_path': str(entry.path),
            'is_temporary': entry.is_temporary,
            'file_size': entry.size,
            'downloaded_at': entry.created_at.isoformat(),
        }

    def _records(self, build_id: int) -> List[Dict[str, Any]]:
        return self.client.get_timeline(build_id).get('records') or []

    def download_job_log(
        self, build_id: int, job_name: str, output_path: Optional[str] = None
    ) -> Dict[str, Any]:
        """Download the log of the job named exactly ``job_name``.

        Args:
            build_id: ID of the build
            job_name: Exact name of the Job timeline record
            output_path: Optional file or directory path for the log

        Returns:
            Dictionary with the saved path, size and job details

        Raises:
            NotFoundError: No such job, or the job has no log
            ValueError: The job has not completed yet
        """
        records = self._records(build_id)
        jobs = [r for r in records if r.get('type') == 'Job']
        job = next((r for r in jobs if r.get('name') == job_name), None)
        if job is None:
            available = sorted({r['name'] for r in jobs if r.get('name')})
            raise NotFoundError(
                'Job',
                job_name,
                hint=f'Available jobs: {", ".join(available)}' if available else None,
            )

        state = str(job.get('state') or '').lower()
        if state != 'completed':
            raise ValueError(
                f"Job '{job_name}' has not completed yet (state: {job.get('state') or 'unknown'})"
            )

        log_id = _log_id(job)
        if log_id is None:
            raise NotFoundError('Log', f'for job {job_name}')

        saved = self._download(
            DownloadCategory.JOB_LOGS,
            build_id,
            f'{job_name}-log-{log_id}.log',
            output_path,
            lambda path: self.client.download_log(build_id, log_id, path),
        )
        saved.update(
            {
                'job_name': job.get('name'),
                'job_id': job.get('id'),
                'log_id': log_id,
                'duration': format_duration(job.get('startTime'), job.get('finishTime')),
            }
        )
        return saved

    def find_records(
        self, records: List[Dict[str, Any]], name: str, exact_match: bool = True
    ) -> List[Dict[str, Any]]:
        """Find timeline records by exact name, or by case-insensitive substring."""
        candidates = [r for r in records if r.get('type') in SEARCHABLE_RECORD_TYPES and r.get('name')]
        if exact_match:
            return [r for r in candidates if r['name'] == name]
        needle = name.lower()
        return [r for r in candidates if needle in r['name'].lower()]

    @staticmethod
    def _descendant_jobs(records: List[Dict[str, Any]], root_id: str) -> List[Dict[str, Any]]:
        children: Dict[str, List[Dict[str, Any]]] = {}
        for record in records:
            children.setdefault(record.get('parentId'), []).append(record)

        jobs = []
        pending = [root_id]
        while pending:
            for child in children.get(pending.pop(), []):
                if child.get('type') == 'Job':
                    jobs.append(child)
                elif child.get('id'):
                    pending.append(child['id'])
        jobs.sort(key=lambda r: (r.get('order') or 0, r.get('name') or ''))
        return jobs

    def download_logs_by_name(
        self,
        build_id: int,
        name: str,
        output_path: Optional[str] = None,
        exact_match: bool = True,
    ) -> Dict[str, Any]:
        """Download the logs of a stage, job or task found by name in the timeline.

        A stage expands to the logs of every job beneath it. Managed files for
        a stage are prefixed with the stage name; with an explicit path they
        go into a subdirectory named after the stage.

        Raises:
            NotFoundError: Nothing matches, or the match has no logs
            ValueError: More than one record matches
        """
        if not name or not name.strip():
            raise ValueError('Name is required')

        records = self._records(build_id)
        matches = self.find_records(records, name, exact_match)
        if not matches:
            raise NotFoundError(
                'Timeline record',
                name,
                hint=None if not exact_match else 'Try exact_match=false for a partial match',
            )
        if len(matches) > 1:
            candidates = ', '.join(f"{r.get('type')} '{r.get('name')}'" for r in matches)
            raise ValueError(
                f"Multiple records match '{name}': {candidates}. Use a more specific name."
            )

        record = matches[0]
        record_type = record.get('type')
        downloaded: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []

        if record_type == 'Stage':
            jobs = [j for j in self._descendant_jobs(records, record.get('id')) if _log_id(j) is not None]
            if not jobs:
                raise NotFoundError('Log', f"for stage {record.get('name')}")

            stage_name = sanitize_filename(record['name'])
            stage_dir = None
            if output_path is not None:
                stage_dir = os.path.join(os.path.expanduser(output_path), stage_name) + os.sep

            for job in jobs:
                log_id = _log_id(job)
                if stage_dir is None:
                    filename = f"{record['name']}_{job.get('name')}-log-{log_id}.log"
                else:
                    filename = f"{job.get('name')}-log-{log_id}.log"
                try:
                    saved = self._download(
                        DownloadCategory.LOGS_BY_NAME,
                        build_id,
                        filename,
                        stage_dir,
                        lambda path, log_id=log_id: self.client.download_log(build_id, log_id, path),
                    )
                except (AdoApiError, NotFoundError) as e:
                    logger.warning(f"Failed to download log for job '{job.get('name')}': {str(e)}")
                    failed.append({'name': job.get('name'), 'log_id': log_id, 'error': str(e)})
                    continue
                saved.update({'name': job.get('name'), 'type': 'Job', 'log_id': log_id})
                downloaded.append(saved)

            if not downloaded:
                raise AdoApiError(
                    f"Failed to download any job log for stage '{record.get('name')}': "
                    + '; '.join(f['error'] for f in failed)
                )
        else:
            log_id = _log_id(record)
            if log_id is None:
                raise NotFoundError('Log', f"for {record_type} {record.get('name')}")
            saved = self._download(
                DownloadCategory.LOGS_BY_NAME,
                build_id,
                f"{record.get('name')}-log-{log_id}.log",
                output_path,
                lambda path: self.client.download_log(build_id, log_id, path),
            )
            saved.update({'name': record.get('name'), 'type': record_type, 'log_id': log_id})
            downloaded.append(saved)

        return {
            'type': record_type,
            'matched_record': _record_summary(record),
            'downloaded_logs': downloaded,
            'failed_logs': failed,
        }

    def download_artifact(
        self,
        build_id: int,
        artifact_name: str,
        definition_id: Optional[int] = None,
        output_path: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Download a Pipeline artifact as a ZIP file through its signed URL.

        Args:
            build_id: ID of the build (pipeline run)
            artifact_name: Name of the Pipeline artifact
            definition_id: Build definition ID, looked up from the build when omitted
            output_path: Optional file or directory path for the archive

        Returns:
            Dictionary with the saved path, size and artifact details
        """
        if definition_id is None:
            build = self.client.get_build(build_id)
            definition_id = (build.get('definition') or {}).get('id')
            if definition_id is None:
                raise AdoApiError(f'Build {build_id} has no definition ID')

        artifacts = self.client.list_artifacts(build_id)
        artifact = next((a for a in artifacts if a.get('name') == artifact_name), None)
        if artifact is None:
            available = sorted(a['name'] for a in artifacts if a.get('name'))
            raise NotFoundError(
                'Artifact',
                artifact_name,
                hint=f'Available artifacts: {", ".join(available)}' if available else None,
            )

        artifact_type = (artifact.get('resource') or {}).get('type')
        if artifact_type != 'PipelineArtifact':
            raise ValueError(
                f"Artifact '{artifact_name}' is a {artifact_type or 'unknown'} artifact. "
                'Only Pipeline artifacts (PublishPipelineArtifact task) can be downloaded.'
            )

        pipeline_artifact = self.client.get_pipeline_artifact(definition_id, build_id, artifact_name)
        signed_url = (pipeline_artifact.get('signedContent') or {}).get('url')
        if not signed_url:
            raise AdoApiError(f"No signed download URL returned for artifact '{artifact_name}'")

        saved = self._download(
            DownloadCategory.ARTIFACTS,
            build_id,
            f'{artifact_name}.zip',
            output_path,
            lambda path: self.client.download_url(signed_url, path),
        )
        saved.update(
            {
                'artifact_name': artifact_name,
                'artifact_id': artifact.get('id'),
                'definition_id': definition_id,
            }
        )
        return saved
