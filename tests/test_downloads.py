import pytest
from tl.ado_build_mcp_server.downloads import BuildDownloader
from tl.ado_build_mcp_server.exceptions import AdoApiError, AdoPermissionError, NotFoundError
from tl.ado_build_mcp_server.temp_manager import DownloadCategory, partial_path
from unittest.mock import MagicMock


BUILD_ID = 100

TIMELINE = {
    'id': 'timeline-1',
    'records': [
        {'id': 's1', 'type': 'Stage', 'name': 'Build Stage', 'state': 'completed', 'result': 'failed'},
        {'id': 'p1', 'parentId': 's1', 'type': 'Phase', 'name': 'Build Phase'},
        {
            'id': 'j2',
            'parentId': 'p1',
            'type': 'Job',
            'name': 'Test',
            'order': 2,
            'state': 'completed',
            'result': 'failed',
            'startTime': '2024-01-01T10:00:00Z',
            'finishTime': '2024-01-01T10:03:10Z',
            'log': {'id': 12},
        },
        {
            'id': 'j1',
            'parentId': 'p1',
            'type': 'Job',
            'name': 'Build',
            'order': 1,
            'state': 'completed',
            'result': 'succeeded',
            'startTime': '2024-01-01T09:00:00Z',
            'finishTime': '2024-01-01T09:01:30Z',
            'log': {'id': 11},
        },
        {'id': 't1', 'parentId': 'j2', 'type': 'Task', 'name': 'Run unit tests', 'log': {'id': 13}},
        {'id': 'j3', 'type': 'Job', 'name': 'Deploy', 'state': 'inProgress'},
        {'id': 'c1', 'type': 'Checkpoint', 'name': 'Build Checkpoint'},
    ],
}


def _write_log(build_id, log_id, path):
    content = f'log {log_id} of build {build_id}\n'.encode()
    path.write_bytes(content)
    return len(content)


@pytest.fixture
def client():
    client = MagicMock()
    client.get_timeline.return_value = TIMELINE
    client.download_log.side_effect = _write_log
    return client


@pytest.fixture
def downloader(client, manager):
    return BuildDownloader(client, manager)


class TestDownloadJobLog:
    def test_saves_into_staging_area(self, downloader, manager):
        info = downloader.download_job_log(BUILD_ID, 'Build')

        expected = manager.downloads_dir / 'job-logs' / '100' / 'Build-log-11.log'
        assert info['saved_path'] == str(expected)
        assert info['is_temporary'] is True
        assert info['file_size'] == expected.stat().st_size
        assert info['job_id'] == 'j1'
        assert info['log_id'] == 11
        assert info['duration'] == '1m 30s'
        assert [e.path for e in manager.list_downloads(category=DownloadCategory.JOB_LOGS)] == [expected]

    def test_explicit_output_path(self, downloader, manager, tmp_path):
        target = tmp_path / 'mine' / 'build.txt'

        info = downloader.download_job_log(BUILD_ID, 'Build', str(target))

        assert info['saved_path'] == str(target)
        assert info['is_temporary'] is False
        assert target.read_text() == 'log 11 of build 100\n'
        assert manager.list_downloads(build_id=BUILD_ID)[0].path == target

    def test_unknown_job_lists_available_jobs(self, downloader):
        with pytest.raises(NotFoundError) as excinfo:
            downloader.download_job_log(BUILD_ID, 'build')

        assert 'Available jobs: Build, Deploy, Test' in str(excinfo.value)

    def test_job_still_running(self, downloader):
        with pytest.raises(ValueError, match='has not completed yet'):
            downloader.download_job_log(BUILD_ID, 'Deploy')

    def test_failed_download_leaves_no_file(self, downloader, client, manager):
        def partial(build_id, log_id, path):
            path.write_bytes(b'partial')
            raise AdoApiError('connection reset')

        client.download_log.side_effect = partial

        with pytest.raises(AdoApiError):
            downloader.download_job_log(BUILD_ID, 'Build')

        assert manager.list_downloads() == []
        build_dir = manager.downloads_dir / 'job-logs' / '100'
        assert list(build_dir.iterdir()) == []

    def test_failed_download_keeps_existing_user_file(self, downloader, client, tmp_path):
        """A request that fails must not delete a file already at the output path."""
        existing = tmp_path / 'keep' / 'build.log'
        existing.parent.mkdir()
        existing.write_text('my notes')
        client.download_log.side_effect = AdoPermissionError('download log 11', 'Build (Read)')

        with pytest.raises(AdoPermissionError):
            downloader.download_job_log(BUILD_ID, 'Build', str(existing))

        assert existing.read_text() == 'my notes'
        assert sorted(p.name for p in existing.parent.iterdir()) == ['build.log']

    def test_failed_redownload_keeps_previous_copy(self, downloader, client, manager):
        first = downloader.download_job_log(BUILD_ID, 'Build')

        def interrupted(build_id, log_id, path):
            path.write_bytes(b'trunc')
            raise AdoApiError('connection reset')

        client.download_log.side_effect = interrupted

        with pytest.raises(AdoApiError):
            downloader.download_job_log(BUILD_ID, 'Build')

        saved = manager.downloads_dir / 'job-logs' / '100' / 'Build-log-11.log'
        assert first['saved_path'] == str(saved)
        assert saved.read_text() == 'log 11 of build 100\n'
        assert [e.path for e in manager.list_downloads()] == [saved]

    def test_successful_download_replaces_existing_file(self, downloader, tmp_path):
        existing = tmp_path / 'build.log'
        existing.write_text('stale')

        info = downloader.download_job_log(BUILD_ID, 'Build', str(existing))

        assert existing.read_text() == 'log 11 of build 100\n'
        assert info['file_size'] == len('log 11 of build 100\n')
        assert not partial_path(existing).exists()


class TestDownloadLogsByName:
    def test_stage_downloads_every_job_log(self, downloader, manager):
        info = downloader.download_logs_by_name(BUILD_ID, 'Build Stage')

        assert info['type'] == 'Stage'
        assert info['matched_record']['id'] == 's1'
        names = [d['name'] for d in info['downloaded_logs']]
        assert names == ['Build', 'Test']
        build_dir = manager.downloads_dir / 'logs-by-name' / '100'
        assert sorted(p.name for p in build_dir.iterdir()) == [
            'Build-Stage_Build-log-11.log',
            'Build-Stage_Test-log-12.log',
        ]
        assert info['failed_logs'] == []

    def test_stage_with_output_path_uses_stage_directory(self, downloader, tmp_path):
        info = downloader.download_logs_by_name(BUILD_ID, 'Build Stage', str(tmp_path / 'out'))

        stage_dir = tmp_path / 'out' / 'Build-Stage'
        assert sorted(p.name for p in stage_dir.iterdir()) == ['Build-log-11.log', 'Test-log-12.log']
        assert all(d['is_temporary'] is False for d in info['downloaded_logs'])

    def test_partial_name_match_for_task(self, downloader, manager):
        info = downloader.download_logs_by_name(BUILD_ID, 'unit tests', exact_match=False)

        assert info['type'] == 'Task'
        assert info['downloaded_logs'][0]['log_id'] == 13
        assert info['downloaded_logs'][0]['saved_path'].endswith('Run-unit-tests-log-13.log')

    def test_ambiguous_name(self, downloader):
        with pytest.raises(ValueError, match='Multiple records match'):
            downloader.download_logs_by_name(BUILD_ID, 'build', exact_match=False)

    def test_no_match(self, downloader):
        with pytest.raises(NotFoundError, match='exact_match=false'):
            downloader.download_logs_by_name(BUILD_ID, 'Lint')

    def test_record_without_log(self, downloader):
        with pytest.raises(NotFoundError):
            downloader.download_logs_by_name(BUILD_ID, 'Deploy')

    def test_failed_job_logs_are_reported(self, downloader, client):
        def flaky(build_id, log_id, path):
            if log_id == 12:
                raise AdoApiError('timeout')
            return _write_log(build_id, log_id, path)

        client.download_log.side_effect = flaky

        info = downloader.download_logs_by_name(BUILD_ID, 'Build Stage')

        assert [d['name'] for d in info['downloaded_logs']] == ['Build']
        assert info['failed_logs'] == [{'name': 'Test', 'log_id': 12, 'error': 'timeout'}]

    def test_every_job_log_failing_is_an_error(self, downloader, client):
        client.download_log.side_effect = AdoApiError('service unavailable')

        with pytest.raises(AdoApiError, match='Failed to download any job log'):
            downloader.download_logs_by_name(BUILD_ID, 'Build Stage')

    def test_find_records_ignores_other_types(self, downloader):
        assert downloader.find_records(TIMELINE['records'], 'checkpoint', exact_match=False) == []


class TestDownloadArtifact:
    @pytest.fixture
    def artifact_client(self, client):
        client.get_build.return_value = {'id': BUILD_ID, 'definition': {'id': 7}}
        client.list_artifacts.return_value = [
            {'id': 1, 'name': 'drop', 'resource': {'type': 'PipelineArtifact'}},
            {'id': 2, 'name': 'legacy', 'resource': {'type': 'Container'}},
        ]
        client.get_pipeline_artifact.return_value = {
            'name': 'drop',
            'signedContent': {'url': 'https://blob.example/drop?sig=1'},
        }

        def fake_download(url, path):
            path.write_bytes(b'PK\x03\x04')
            return 4

        client.download_url.side_effect = fake_download
        return client

    def test_downloads_zip_via_signed_url(self, artifact_client, downloader, manager):
        info = downloader.download_artifact(BUILD_ID, 'drop')

        expected = manager.downloads_dir / 'artifacts' / '100' / 'drop.zip'
        assert info['saved_path'] == str(expected)
        assert info['file_size'] == 4
        assert info['definition_id'] == 7
        artifact_client.get_pipeline_artifact.assert_called_once_with(7, BUILD_ID, 'drop')
        artifact_client.download_url.assert_called_once_with(
            'https://blob.example/drop?sig=1', partial_path(expected)
        )
        assert expected.read_bytes() == b'PK\x03\x04'

    def test_definition_id_skips_build_lookup(self, artifact_client, downloader):
        downloader.download_artifact(BUILD_ID, 'drop', definition_id=9)

        artifact_client.get_build.assert_not_called()
        artifact_client.get_pipeline_artifact.assert_called_once_with(9, BUILD_ID, 'drop')

    def test_container_artifacts_are_rejected(self, artifact_client, downloader):
        with pytest.raises(ValueError, match='Only Pipeline artifacts'):
            downloader.download_artifact(BUILD_ID, 'legacy')

    def test_missing_artifact(self, artifact_client, downloader):
        with pytest.raises(NotFoundError, match='Available artifacts: drop, legacy'):
            downloader.download_artifact(BUILD_ID, 'nope')

    def test_missing_signed_url(self, artifact_client, downloader):
        artifact_client.get_pipeline_artifact.return_value = {'name': 'drop'}

        with pytest.raises(AdoApiError, match='No signed download URL'):
            downloader.download_artifact(BUILD_ID, 'drop')
