"""Azure DevOps Build MCP Server Package.

This package provides Model Context Protocol (MCP) server functionality for Azure DevOps
builds and pipelines, including a managed temporary area for downloaded logs and artifacts.
"""

__version__ = '0.1.0'
__author__ = 'TechniumLabs'
__description__ = 'Azure DevOps MCP Server for build agents, pipelines, logs and artifacts'
