"""Tests for the download and download management tools."""
import os
import pytest
import time
from tl.ado_build_mcp_server.download_tools import DownloadTools
from tl.ado_build_mcp_server.exceptions import FilesystemError, NotFoundError
from tl.ado_build_mcp_server.temp_manager import DownloadCategory
from unittest.mock import MagicMock, patch


@pytest.fixture
def downloader():
    return MagicMock()


@pytest.fixture
def tools(mcp, downloader, manager):
    return DownloadTools(mcp, downloader, manager)


def _stage(manager, category, build_id, filename, content=b'data', age_hours=0):
    path = manager.resolve_output_path(category, build_id, filename).path
    path.write_bytes(content)
    if age_hours:
        stamp = time.time() - age_hours * 3600
        os.utime(path, (stamp, stamp))
    return path


def test_registers_tools(tools, mcp):
    assert set(mcp.registered) == {
        'build_download_job_logs',
        'build_download_logs_by_name',
        'build_download_artifact',
        'list_downloads',
        'cleanup_downloads',
        'get_download_location',
    }


class TestDownloadTools:
    def test_job_log_success(self, tools, downloader):
        downloader.download_job_log.return_value = {'saved_path': '/tmp/x.log', 'file_size': 3}

        response = tools.build_download_job_logs(None, 5, 'Build')

        assert response['status'] == 'success'
        assert response['download_info']['saved_path'] == '/tmp/x.log'
        downloader.download_job_log.assert_called_once_with(5, 'Build', None)

    def test_job_log_not_found(self, tools, downloader):
        downloader.download_job_log.side_effect = NotFoundError('Job', 'Lint', hint='Available jobs: Build')

        response = tools.build_download_job_logs(None, 5, 'Lint')

        assert response['status'] == 'error'
        assert response['error_type'] == 'not_found'
        assert 'Available jobs: Build' in response['message']

    def test_job_log_filesystem_error(self, tools, downloader):
        downloader.download_job_log.side_effect = FilesystemError('/readonly', PermissionError('denied'))

        response = tools.build_download_job_logs(None, 5, 'Build', output_path='/readonly/')

        assert response['error_type'] == 'filesystem_error'

    def test_logs_by_name_reports_failures(self, tools, downloader):
        downloader.download_logs_by_name.return_value = {
            'type': 'Stage',
            'matched_record': {'id': 's'},
            'downloaded_logs': [{'name': 'Build'}],
            'failed_logs': [{'name': 'Test', 'log_id': 2, 'error': 'timeout'}],
        }

        response = tools.build_download_logs_by_name(None, 5, 'Deploy', exact_match=None)

        assert response['status'] == 'success'
        assert '1 log(s) failed' in response['message']
        downloader.download_logs_by_name.assert_called_once_with(5, 'Deploy', None, exact_match=True)

    def test_artifact_requires_name(self, tools, downloader):
        response = tools.build_download_artifact(None, 5, '')

        assert response['error_type'] == 'validation_error'
        downloader.download_artifact.assert_not_called()

    def test_artifact_success(self, tools, downloader):
        downloader.download_artifact.return_value = {'saved_path': '/tmp/drop.zip', 'file_size': 10}

        response = tools.build_download_artifact(None, 5, 'drop', definition_id=3)

        assert response['status'] == 'success'
        downloader.download_artifact.assert_called_once_with(5, 'drop', definition_id=3, output_path=None)


class TestListDownloads:
    def test_summary_by_category(self, tools, manager):
        _stage(manager, DownloadCategory.JOB_LOGS, 1, 'a.log', b'12345')
        _stage(manager, DownloadCategory.ARTIFACTS, 1, 'b.zip', b'123')

        response = tools.list_downloads(None)

        assert response['status'] == 'success'
        assert response['location'] == str(manager.root)
        assert response['summary']['total_files'] == 2
        assert response['summary']['total_size'] == 8
        assert response['summary']['total_size_formatted'] == '8 B'
        assert response['summary']['by_category']['job-logs'] == {'count': 1, 'size': 5}
        assert response['summary']['by_category']['logs-by-name'] == {'count': 0, 'size': 0}
        assert {d['filename'] for d in response['downloads']} == {'a.log', 'b.zip'}

    def test_filters(self, tools, manager):
        _stage(manager, DownloadCategory.JOB_LOGS, 1, 'a.log')
        _stage(manager, DownloadCategory.JOB_LOGS, 2, 'b.log')

        response = tools.list_downloads(None, category='job-logs', build_id=2)

        assert [d['filename'] for d in response['downloads']] == ['b.log']

    def test_invalid_category(self, tools):
        response = tools.list_downloads(None, category='videos')

        assert response['status'] == 'error'
        assert response['error_type'] == 'validation_error'


class TestCleanupDownloads:
    def test_defaults_to_files_older_than_a_day(self, tools, manager):
        _stage(manager, DownloadCategory.JOB_LOGS, 1, 'old.log', age_hours=30)
        fresh = _stage(manager, DownloadCategory.JOB_LOGS, 1, 'fresh.log')

        response = tools.cleanup_downloads(None)

        assert response['status'] == 'success'
        assert response['files_removed'] == 1
        assert fresh.exists()

    def test_build_filter_removes_regardless_of_age(self, tools, manager):
        _stage(manager, DownloadCategory.ARTIFACTS, 4, 'drop.zip', b'1234')

        response = tools.cleanup_downloads(None, build_id=4)

        assert response['files_removed'] == 1
        assert response['dirs_removed'] == 1
        assert response['space_saved'] == 4

    def test_explicit_age(self, tools, manager):
        _stage(manager, DownloadCategory.JOB_LOGS, 1, 'a.log', age_hours=2)

        response = tools.cleanup_downloads(None, older_than_hours=1)

        assert response['files_removed'] == 1

    def test_negative_age_rejected(self, tools):
        response = tools.cleanup_downloads(None, older_than_hours=-1)

        assert response['error_type'] == 'validation_error'

    def test_partial_when_files_cannot_be_removed(self, tools, manager):
        _stage(manager, DownloadCategory.JOB_LOGS, 1, 'a.log')

        with patch('pathlib.Path.unlink', side_effect=PermissionError('denied')):
            response = tools.cleanup_downloads(None, build_id=1)

        assert response['status'] == 'partial'
        assert len(response['errors']) == 1


class TestDownloadLocation:
    def test_before_any_download(self, tools, manager):
        response = tools.get_download_location(None)

        assert response['status'] == 'success'
        assert response['path'] == str(manager.root)
        assert response['exists'] is False
        assert response['file_count'] == 0
        assert response['oldest_file'] is None

    def test_after_downloads(self, tools, manager):
        _stage(manager, DownloadCategory.JOB_LOGS, 1, 'new.log')
        _stage(manager, DownloadCategory.JOB_LOGS, 1, 'old.log', age_hours=3)

        response = tools.get_download_location(None)

        assert response['exists'] is True
        assert response['file_count'] == 2
        assert response['oldest_file']['filename'] == 'old.log'
