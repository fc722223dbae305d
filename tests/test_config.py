import pytest
from datetime import timedelta
from tl.ado_build_mcp_server.config import AzureDevOpsConfig, normalize_organization_url


REQUIRED = {
    'AZURE_DEVOPS_ORG_URL': 'https://dev.azure.com/contoso',
    'AZURE_DEVOPS_PROJECT': 'Fabrikam',
    'AZURE_DEVOPS_PAT': 'secret-pat',
}


class TestFromEnv:
    def test_defaults(self):
        config = AzureDevOpsConfig.from_env(REQUIRED)

        assert config.organization_url == 'https://dev.azure.com/contoso/'
        assert config.project == 'Fabrikam'
        assert config.personal_access_token == 'secret-pat'
        assert config.log_level == 'INFO'
        assert config.logfire_write_token == ''
        assert config.stale_after == timedelta(hours=24)
        assert config.transport == 'stdio'

    def test_optional_settings(self):
        env = dict(
            REQUIRED,
            LOG_LEVEL='debug',
            LOGFIRE_WRITE_TOKEN='lf-token',
            ADO_MCP_STALE_ROOT_HOURS='6.5',
            MCP_TRANSPORT='streamable-http',
        )

        config = AzureDevOpsConfig.from_env(env)

        assert config.log_level == 'DEBUG'
        assert config.logfire_write_token == 'lf-token'
        assert config.stale_after == timedelta(hours=6.5)
        assert config.transport == 'streamable-http'

    def test_reports_every_missing_variable(self):
        with pytest.raises(ValueError) as excinfo:
            AzureDevOpsConfig.from_env({'AZURE_DEVOPS_PROJECT': '  '})

        message = str(excinfo.value)
        assert 'AZURE_DEVOPS_ORG_URL is required' in message
        assert 'AZURE_DEVOPS_PROJECT is required' in message
        assert 'AZURE_DEVOPS_PAT is required' in message

    @pytest.mark.parametrize('hours', ['abc', '0', '-2'])
    def test_invalid_stale_hours(self, hours):
        with pytest.raises(ValueError, match='ADO_MCP_STALE_ROOT_HOURS'):
            AzureDevOpsConfig.from_env(dict(REQUIRED, ADO_MCP_STALE_ROOT_HOURS=hours))

    def test_invalid_transport(self):
        with pytest.raises(ValueError, match='MCP_TRANSPORT'):
            AzureDevOpsConfig.from_env(dict(REQUIRED, MCP_TRANSPORT='websocket'))

    def test_reads_process_environment(self, monkeypatch):
        for key, value in REQUIRED.items():
            monkeypatch.setenv(key, value)
        monkeypatch.delenv('MCP_TRANSPORT', raising=False)

        assert AzureDevOpsConfig.from_env().project == 'Fabrikam'


@pytest.mark.parametrize(
    'value,expected',
    [
        ('contoso', 'https://dev.azure.com/contoso/'),
        ('https://dev.azure.com/contoso', 'https://dev.azure.com/contoso/'),
        ('https://dev.azure.com/contoso/', 'https://dev.azure.com/contoso/'),
        (' https://ado.example.com/tfs/Default ', 'https://ado.example.com/tfs/Default/'),
    ],
)
def test_normalize_organization_url(value, expected):
    assert normalize_organization_url(value) == expected
