import pytest
import signal
from tl.ado_build_mcp_server import server
from unittest.mock import MagicMock, patch


ENV = {
    'AZURE_DEVOPS_ORG_URL': 'contoso',
    'AZURE_DEVOPS_PROJECT': 'Fabrikam',
    'AZURE_DEVOPS_PAT': 'secret-pat',
    'MCP_TRANSPORT': 'sse',
}


def test_register_tools(config, manager, mcp):
    with patch.object(server, 'mcp', mcp):
        server.register_tools(config, manager)

    assert len(mcp.registered) == 16
    assert 'cleanup_downloads' in mcp.registered
    assert 'build_get_timeline' in mcp.registered


def test_create_temp_manager_purges_before_serving(config):
    with patch.object(server, 'TempDownloadManager') as manager_cls:
        temp_manager = server.create_temp_manager(config)

    manager_cls.assert_called_once_with(stale_after=config.stale_after)
    temp_manager.purge_stale_roots.assert_called_once_with()
    temp_manager.install_exit_handler.assert_called_once_with()


def test_sigterm_raises_system_exit():
    with pytest.raises(SystemExit) as excinfo:
        server._exit_on_sigterm(signal.SIGTERM, None)
    assert excinfo.value.code == 128 + signal.SIGTERM


def test_main_exits_on_missing_configuration(monkeypatch):
    for key in ENV:
        monkeypatch.delenv(key, raising=False)

    with patch.object(server, 'load_config'), pytest.raises(SystemExit) as excinfo:
        server.main()

    assert excinfo.value.code == 1


def test_main_starts_server(monkeypatch):
    for key, value in ENV.items():
        monkeypatch.setenv(key, value)
    fake_mcp = MagicMock()
    temp_manager = MagicMock()

    with patch.object(server, 'load_config'), patch.object(server, 'setup_logging'), patch.object(
        server, 'create_temp_manager', return_value=temp_manager
    ), patch.object(server, 'register_tools') as register_tools, patch.object(
        server, 'mcp', fake_mcp
    ), patch('signal.signal') as signal_handler:
        server.main()

    config = register_tools.call_args.args[0]
    assert config.organization_url == 'https://dev.azure.com/contoso/'
    register_tools.assert_called_once_with(config, temp_manager)
    signal_handler.assert_called_once_with(signal.SIGTERM, server._exit_on_sigterm)
    fake_mcp.run.assert_called_once_with(transport='sse')
