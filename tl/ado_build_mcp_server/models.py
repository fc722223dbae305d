from typing import Any, Dict, List, Optional


class ADOResponse(Dict[str, Any]):
    """Base response model carrying status, message and, on failure, an error type."""

    def __init__(
        self, status: str, message: str, error_type: Optional[str] = None, **fields: Any
    ):
        """Initialize the response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            error_type: Kind of failure (permission, not_found, validation_error,
                filesystem_error, api_error) when status is error
            fields: Tool-specific payload
        """
        payload: Dict[str, Any] = {'status': status, 'message': message}
        if error_type:
            payload['error_type'] = error_type
        payload.update(fields)
        super().__init__(payload)
        self.status = status
        self.message = message
        self.error_type = error_type


class ADOHealthCheckResponse(ADOResponse):
    """Response model for the connection health check."""

    def __init__(
        self,
        status: str,
        message: str,
        organization_url: str,
        project: str,
        error_type: Optional[str] = None,
    ):
        """Initialize Azure DevOps health check response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            organization_url: Organization the server is connected to
            project: Project the server operates on
            error_type: Kind of failure, if any
        """
        super().__init__(
            status, message, error_type, organization_url=organization_url, project=project
        )
        self.organization_url = organization_url
        self.project = project


class ADOListQueuesResponse(ADOResponse):
    """Response model for listing agent queues in a project."""

    def __init__(
        self,
        status: str,
        message: str,
        queues: List[Dict[str, Any]],
        count: int,
        error_type: Optional[str] = None,
    ):
        """Initialize Azure DevOps queues response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            queues: List of queue information
            count: Number of queues returned
            error_type: Kind of failure, if any
        """
        super().__init__(status, message, error_type, queues=queues, count=count)
        self.queues = queues
        self.count = count


class ADOGetQueueResponse(ADOResponse):
    """Response model for a single agent queue."""

    def __init__(
        self, status: str, message: str, queue: Dict[str, Any], error_type: Optional[str] = None
    ):
        super().__init__(status, message, error_type, queue=queue)
        self.queue = queue


class ADOFindAgentResponse(ADOResponse):
    """Response model for locating an agent across the organization's pools."""

    def __init__(
        self,
        status: str,
        message: str,
        matches: List[Dict[str, Any]],
        count: int,
        error_type: Optional[str] = None,
    ):
        """Initialize Azure DevOps find agent response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            matches: Agents found, each with the pool it belongs to
            count: Number of matches
            error_type: Kind of failure, if any
        """
        super().__init__(status, message, error_type, matches=matches, count=count)
        self.matches = matches
        self.count = count


class ADOListAgentsResponse(ADOResponse):
    """Response model for listing agents of the project's pools."""

    def __init__(
        self,
        status: str,
        message: str,
        agents: List[Dict[str, Any]],
        summary: Dict[str, Any],
        continuation_token: Optional[str] = None,
        has_more: bool = False,
        error_type: Optional[str] = None,
    ):
        """Initialize Azure DevOps agents response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            agents: List of agent information
            summary: Totals by status and the pools seen
            continuation_token: Token for the next page, if any
            has_more: Whether another page exists
            error_type: Kind of failure, if any
        """
        super().__init__(
            status,
            message,
            error_type,
            agents=agents,
            summary=summary,
            continuation_token=continuation_token,
            has_more=has_more,
        )
        self.agents = agents
        self.summary = summary
        self.continuation_token = continuation_token
        self.has_more = has_more


class ADOGetTimelineResponse(ADOResponse):
    """Response model for a build timeline."""

    def __init__(
        self,
        status: str,
        message: str,
        timeline: Dict[str, Any],
        jobs: List[Dict[str, Any]],
        tasks: List[Dict[str, Any]],
        summary: Dict[str, Any],
        error_type: Optional[str] = None,
    ):
        """Initialize Azure DevOps build timeline response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            timeline: Timeline metadata
            jobs: Job records with the agents that ran them
            tasks: Task records
            summary: Record counts by type
            error_type: Kind of failure, if any
        """
        super().__init__(
            status, message, error_type, timeline=timeline, jobs=jobs, tasks=tasks, summary=summary
        )
        self.timeline = timeline
        self.jobs = jobs
        self.tasks = tasks
        self.summary = summary


class ADOListBuildsResponse(ADOResponse):
    """Response model for listing builds."""

    def __init__(
        self,
        status: str,
        message: str,
        builds: List[Dict[str, Any]],
        continuation_token: Optional[str] = None,
        has_more: bool = False,
        page_info: Optional[Dict[str, Any]] = None,
        error_type: Optional[str] = None,
    ):
        super().__init__(
            status,
            message,
            error_type,
            builds=builds,
            continuation_token=continuation_token,
            has_more=has_more,
            page_info=page_info or {},
        )
        self.builds = builds
        self.continuation_token = continuation_token
        self.has_more = has_more
        self.page_info = page_info or {}


class ADOListDefinitionsResponse(ADOResponse):
    """Response model for listing build definitions."""

    def __init__(
        self,
        status: str,
        message: str,
        definitions: List[Dict[str, Any]],
        continuation_token: Optional[str] = None,
        has_more: bool = False,
        page_info: Optional[Dict[str, Any]] = None,
        error_type: Optional[str] = None,
    ):
        super().__init__(
            status,
            message,
            error_type,
            definitions=definitions,
            continuation_token=continuation_token,
            has_more=has_more,
            page_info=page_info or {},
        )
        self.definitions = definitions
        self.continuation_token = continuation_token
        self.has_more = has_more
        self.page_info = page_info or {}


class ADOQueueBuildResponse(ADOResponse):
    """Response model for queueing a build through the pipelines API."""

    def __init__(
        self,
        status: str,
        message: str,
        build_info: Dict[str, Any],
        error_type: Optional[str] = None,
    ):
        """Initialize Azure DevOps queue build response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            build_info: Information about the queued run
            error_type: Kind of failure, if any
        """
        super().__init__(status, message, error_type, build_info=build_info)
        self.build_info = build_info


class ADOListArtifactsResponse(ADOResponse):
    """Response model for listing the artifacts of a build."""

    def __init__(
        self,
        status: str,
        message: str,
        build_id: int,
        artifacts: List[Dict[str, Any]],
        count: int,
        error_type: Optional[str] = None,
    ):
        super().__init__(
            status, message, error_type, build_id=build_id, artifacts=artifacts, count=count
        )
        self.build_id = build_id
        self.artifacts = artifacts
        self.count = count


class ADODownloadResponse(ADOResponse):
    """Response model for downloading logs or artifacts to disk."""

    def __init__(
        self,
        status: str,
        message: str,
        download_info: Dict[str, Any],
        error_type: Optional[str] = None,
    ):
        """Initialize Azure DevOps download response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            download_info: Where the files were saved and what they are
            error_type: Kind of failure, if any
        """
        super().__init__(status, message, error_type, download_info=download_info)
        self.download_info = download_info


class ADOListDownloadsResponse(ADOResponse):
    """Response model for listing staged downloads."""

    def __init__(
        self,
        status: str,
        message: str,
        location: str,
        summary: Dict[str, Any],
        downloads: List[Dict[str, Any]],
        error_type: Optional[str] = None,
    ):
        super().__init__(
            status, message, error_type, location=location, summary=summary, downloads=downloads
        )
        self.location = location
        self.summary = summary
        self.downloads = downloads


class ADOCleanupDownloadsResponse(ADOResponse):
    """Response model for removing staged downloads."""

    def __init__(
        self,
        status: str,
        message: str,
        files_removed: int,
        dirs_removed: int,
        space_saved: int,
        errors: List[str],
        error_type: Optional[str] = None,
    ):
        """Initialize download cleanup response.

        Args:
            status: Status of the operation (success/partial/error)
            message: Message describing the result
            files_removed: Number of files deleted
            dirs_removed: Number of empty build directories deleted
            space_saved: Bytes freed
            errors: Per-file failures
            error_type: Kind of failure, if any
        """
        super().__init__(
            status,
            message,
            error_type,
            files_removed=files_removed,
            dirs_removed=dirs_removed,
            space_saved=space_saved,
            errors=errors,
        )
        self.files_removed = files_removed
        self.dirs_removed = dirs_removed
        self.space_saved = space_saved
        self.errors = errors


class ADODownloadLocationResponse(ADOResponse):
    """Response model describing the download staging directory."""

    def __init__(
        self,
        status: str,
        message: str,
        path: str,
        exists: bool,
        total_size: int,
        file_count: int,
        oldest_file: Optional[Dict[str, Any]] = None,
        error_type: Optional[str] = None,
    ):
        super().__init__(
            status,
            message,
            error_type,
            path=path,
            exists=exists,
            total_size=total_size,
            file_count=file_count,
            oldest_file=oldest_file,
        )
        self.path = path
        self.exists = exists
        self.total_size = total_size
        self.file_count = file_count
        self.oldest_file = oldest_file
