"""Azure DevOps Build MCP Server.

This module provides the main server implementation for the Azure DevOps build MCP server,
including agent and queue inspection, build and pipeline management, and downloading
build logs and artifacts into a process-scoped temporary directory.
"""

import logfire
import signal
import sys
from loguru import logger
from mcp.server.fastmcp import FastMCP
from tl.ado_build_mcp_server.ado_client import AzureDevOpsClient
from tl.ado_build_mcp_server.ado_tools import AzureDevOpsTools
from tl.ado_build_mcp_server.config import AzureDevOpsConfig, load_config
from tl.ado_build_mcp_server.download_tools import DownloadTools
from tl.ado_build_mcp_server.downloads import BuildDownloader
from tl.ado_build_mcp_server.temp_manager import TempDownloadManager


# Server constants for Azure DevOps Build MCP Server
SERVER_INSTRUCTIONS = """
You are an Azure DevOps build assistant focused on helping users with:

1. Finding agent queues, pools and the agents that ran a job
2. Listing pipelines and builds, and queueing new pipeline runs
3. Reading build timelines to see which jobs and tasks failed
4. Downloading job logs, stage logs and pipeline artifacts for inspection

Downloads are saved to a temporary directory owned by this server unless an
output path is given. Use list_downloads to see what was saved,
get_download_location to find the directory, and cleanup_downloads to free
space when the files are no longer needed.
"""

SERVER_DEPENDENCIES: list[str] = [
    'requests',
    'python-dotenv',
    'loguru',
    'logfire',
]

# Initialize MCP server
mcp: FastMCP = FastMCP(
    'tl.ado-build-mcp-server',
    instructions=SERVER_INSTRUCTIONS,
    dependencies=SERVER_DEPENDENCIES,
)


def setup_logging(config: AzureDevOpsConfig) -> None:
    """Set up logging configuration.

    Local logs go to stderr so the stdio transport keeps stdout to itself.
    """
    if not config.logfire_write_token:
        logger.warning('LOGFIRE_WRITE_TOKEN not found in environment variables.')
    else:
        logger.info('LOGFIRE_WRITE_TOKEN successfully loaded.')

    logfire.configure(
        token=config.logfire_write_token or None,
        send_to_logfire='if-token-present',
        console=False,
    )
    logger.configure(
        handlers=[
            {'sink': sys.stderr, 'level': config.log_level},
            logfire.loguru_handler(),
        ]
    )


def create_temp_manager(config: AzureDevOpsConfig) -> TempDownloadManager:
    """Create the download manager, clear out abandoned roots and arrange our own cleanup."""
    temp_manager = TempDownloadManager(stale_after=config.stale_after)
    temp_manager.purge_stale_roots()
    temp_manager.install_exit_handler()
    return temp_manager


def register_tools(config: AzureDevOpsConfig, temp_manager: TempDownloadManager) -> None:
    """Register Azure DevOps tools with the MCP server."""
    global mcp
    client = AzureDevOpsClient(config)
    AzureDevOpsTools(mcp, client)
    DownloadTools(mcp, BuildDownloader(client, temp_manager), temp_manager)


def _exit_on_sigterm(signum, frame) -> None:
    # Raising SystemExit lets the atexit handlers remove the staging root
    sys.exit(128 + signum)


def main() -> None:
    """Main entry point to start the MCP server."""
    global mcp

    # Load configuration before starting the server
    load_config()
    try:
        config = AzureDevOpsConfig.from_env()
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    # Configure logging
    setup_logging(config)

    temp_manager = create_temp_manager(config)
    signal.signal(signal.SIGTERM, _exit_on_sigterm)

    # Register tools
    register_tools(config, temp_manager)

    logger.info(
        f'Created MCP server for {config.organization_url}{config.project}; '
        f'downloads are staged in {temp_manager.get_location()}'
    )
    mcp.run(transport=config.transport)


if __name__ == '__main__':
    main()
