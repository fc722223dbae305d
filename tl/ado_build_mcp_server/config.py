"""Configuration for the Azure DevOps build MCP server."""

import os
from dataclasses import dataclass
from datetime import timedelta
from dotenv import load_dotenv
from loguru import logger
from pathlib import Path
from tl.ado_build_mcp_server.temp_manager import DEFAULT_STALE_AFTER
from typing import List, Mapping, Optional

VALID_TRANSPORTS = ('stdio', 'sse', 'streamable-http')


def load_config() -> None:
    """Load configuration from .env file.

    Looks for .env file in the current directory and parent directories.
    """
    # Start with the current directory and move up to find .env
    current_dir = Path(os.path.dirname(os.path.abspath(__file__)))

    # Look for .env in current directory and up to 3 levels up
    for _ in range(4):
        env_file = current_dir / '.env'
        if env_file.exists():
            logger.info(f'Loading configuration from {env_file}')
            load_dotenv(dotenv_path=env_file)
            break
        current_dir = current_dir.parent
    else:
        logger.warning('No .env file found. Using environment variables if available.')


def normalize_organization_url(organization: str) -> str:
    """Turn a bare organization name into its dev.azure.com URL, with a trailing slash."""
    organization = organization.strip().rstrip('/')
    if not organization.startswith(('https://', 'http://')):
        organization = f'https://dev.azure.com/{organization}'
    return organization + '/'


@dataclass(frozen=True)
class AzureDevOpsConfig:
    """Settings read from the environment at startup."""

    organization_url: str
    project: str
    personal_access_token: str
    log_level: str = 'INFO'
    logfire_write_token: str = ''
    stale_after: timedelta = DEFAULT_STALE_AFTER
    transport: str = 'stdio'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'AzureDevOpsConfig':
        """Build the configuration from environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)

        Returns:
            AzureDevOpsConfig with a normalized organization URL

        Raises:
            ValueError: Listing every missing or malformed variable
        """
        env = os.environ if environ is None else environ
        errors: List[str] = []

        organization = env.get('AZURE_DEVOPS_ORG_URL', '').strip()
        project = env.get('AZURE_DEVOPS_PROJECT', '').strip()
        pat = env.get('AZURE_DEVOPS_PAT', '').strip()

        if not organization:
            errors.append('AZURE_DEVOPS_ORG_URL is required')
        if not project:
            errors.append('AZURE_DEVOPS_PROJECT is required')
        if not pat:
            errors.append('AZURE_DEVOPS_PAT is required')

        stale_after = DEFAULT_STALE_AFTER
        stale_hours = env.get('ADO_MCP_STALE_ROOT_HOURS', '').strip()
        if stale_hours:
            try:
                stale_after = timedelta(hours=float(stale_hours))
            except ValueError:
                errors.append(f'ADO_MCP_STALE_ROOT_HOURS must be a number, got {stale_hours!r}')
            else:
                if stale_after <= timedelta(0):
                    errors.append('ADO_MCP_STALE_ROOT_HOURS must be greater than zero')

        transport = env.get('MCP_TRANSPORT', 'stdio').strip() or 'stdio'
        if transport not in VALID_TRANSPORTS:
            errors.append(
                f'MCP_TRANSPORT must be one of {", ".join(VALID_TRANSPORTS)}, got {transport!r}'
            )

        if errors:
            raise ValueError('Configuration errors:\n' + '\n'.join(errors))

        return cls(
            organization_url=normalize_organization_url(organization),
            project=project,
            personal_access_token=pat,
            log_level=env.get('LOG_LEVEL', 'INFO').strip().upper() or 'INFO',
            logfire_write_token=env.get('LOGFIRE_WRITE_TOKEN', ''),
            stale_after=stale_after,
            transport=transport,
        )
