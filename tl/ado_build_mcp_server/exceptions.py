"""Exceptions raised by the Azure DevOps build MCP server.

Tools catch these and turn them into error responses; the download manager
and the REST client raise them.
"""

import os
from typing import Optional, Union


class AdoMcpError(Exception):
    """Base exception for all server-specific errors."""

    error_type = 'error'


class FilesystemError(AdoMcpError):
    """Raised when a staging directory or file cannot be created or removed."""

    error_type = 'filesystem_error'

    def __init__(self, path: Union[str, os.PathLike], os_error: OSError):
        self.path = str(path)
        self.os_error = os_error
        super().__init__(f'Filesystem operation failed for {self.path}: {os_error}')


class InvalidPathError(AdoMcpError, ValueError):
    """Raised when an output path or filename cannot be used."""

    error_type = 'validation_error'


class NotFoundError(AdoMcpError):
    """Raised when a requested Azure DevOps resource does not exist."""

    error_type = 'not_found'

    def __init__(self, resource: str, identifier: Union[str, int], hint: Optional[str] = None):
        self.resource = resource
        self.identifier = identifier
        message = f"{resource} '{identifier}' not found"
        if hint:
            message = f'{message}. {hint}'
        super().__init__(message)


class AdoPermissionError(AdoMcpError):
    """Raised when the PAT lacks the scope an operation needs."""

    error_type = 'permission'

    def __init__(self, operation: str, required_permission: str):
        self.operation = operation
        self.required_permission = required_permission
        self.suggestion = (
            f"Ask your Azure DevOps administrator to grant you '{required_permission}' "
            'permission at the organization or project level.'
        )
        super().__init__(
            f"Access denied. You need '{required_permission}' permission to {operation}."
        )


class AdoApiError(AdoMcpError):
    """Raised for any other failed Azure DevOps REST call."""

    error_type = 'api_error'

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        if status_code is not None:
            message = f'{message} (HTTP {status_code})'
        super().__init__(message)
