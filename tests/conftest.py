import logfire
import pytest
from datetime import timedelta
from tl.ado_build_mcp_server.config import AzureDevOpsConfig
from tl.ado_build_mcp_server.temp_manager import TempDownloadManager
from unittest.mock import MagicMock


logfire.configure(send_to_logfire=False, console=False)


@pytest.fixture
def config():
    return AzureDevOpsConfig(
        organization_url='https://dev.azure.com/contoso/',
        project='Fabrikam',
        personal_access_token='secret-pat',
        stale_after=timedelta(hours=24),
    )


@pytest.fixture
def manager(tmp_path):
    """Download manager rooted in a per-test temp directory, with a fixed pid."""
    return TempDownloadManager(temp_root=tmp_path, pid=4242)


@pytest.fixture
def mcp():
    """Stand-in for FastMCP that records the registered tools."""
    server = MagicMock()
    server.registered = {}

    def tool(name=None, description=None):
        def register(fn):
            server.registered[name] = fn
            return fn

        return register

    server.tool.side_effect = tool
    return server
