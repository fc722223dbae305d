"""Azure DevOps MCP tools for agents, queues, builds and pipelines.

This module registers the tools that read agent pools and queues, inspect
builds and their timelines, and queue new pipeline runs through the Azure
DevOps REST API.
"""

import logfire
from loguru import logger
from mcp.server.fastmcp.server import Context, FastMCP
from tl.ado_build_mcp_server.ado_client import AzureDevOpsClient
from tl.ado_build_mcp_server.exceptions import AdoMcpError, AdoPermissionError
from tl.ado_build_mcp_server.formatters import log_reference, parse_datetime, pascal_case
from tl.ado_build_mcp_server.models import (
    ADOFindAgentResponse,
    ADOGetQueueResponse,
    ADOGetTimelineResponse,
    ADOHealthCheckResponse,
    ADOListAgentsResponse,
    ADOListArtifactsResponse,
    ADOListBuildsResponse,
    ADOListDefinitionsResponse,
    ADOListQueuesResponse,
    ADOQueueBuildResponse,
)
from typing import Any, Dict, List, Optional, Tuple

BUILD_STATUSES = ('None', 'InProgress', 'Completed', 'Cancelling', 'Postponed', 'NotStarted', 'All')
BUILD_RESULTS = ('None', 'Succeeded', 'PartiallySucceeded', 'Failed', 'Canceled')
MAX_PAGE_SIZE = 200


def log_tool_error(action: str, e: Exception) -> Tuple[str, str]:
    """Log a failed tool call and return its message and error type."""
    if isinstance(e, AdoMcpError):
        error_type = e.error_type
    elif isinstance(e, ValueError):
        error_type = 'validation_error'
    else:
        error_type = 'api_error'

    error_message = f'Error {action}: {str(e)}'
    if isinstance(e, AdoPermissionError):
        error_message = f'{error_message} {e.suggestion}'

    logger.error(error_message)
    logfire.error(f'Failed {action}', error=str(e), error_type=error_type)
    return error_message, error_type


def _validate_page_size(limit: int) -> int:
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValueError(f'Limit must be between 1 and {MAX_PAGE_SIZE}')
    return limit


def _timeline_record(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': record.get('id'),
        'name': record.get('name'),
        'start_time': record.get('startTime'),
        'finish_time': record.get('finishTime'),
        'state': pascal_case(record.get('state')),
        'result': pascal_case(record.get('result')),
        'percent_complete': record.get('percentComplete'),
        'log': log_reference(record),
    }


def _build_summary(build: Dict[str, Any]) -> Dict[str, Any]:
    definition = build.get('definition') or {}
    return {
        'id': build.get('id'),
        'build_number': build.get('buildNumber'),
        'definition': {'id': definition.get('id'), 'name': definition.get('name')},
        'status': pascal_case(build.get('status')),
        'result': pascal_case(build.get('result')),
        'reason': pascal_case(build.get('reason')),
        'start_time': build.get('startTime'),
        'finish_time': build.get('finishTime'),
        'source_branch': build.get('sourceBranch'),
        'source_version': build.get('sourceVersion'),
        'requested_by': (build.get('requestedBy') or {}).get('displayName'),
        'requested_for': (build.get('requestedFor') or {}).get('displayName'),
        'uri': build.get('uri'),
    }


class AzureDevOpsTools:
    """Tools for agents, queues, builds and pipelines in one Azure DevOps project."""

    def __init__(self, mcp: FastMCP, client: AzureDevOpsClient) -> None:
        """Initialize Azure DevOps Tools.

        Args:
            mcp: The MCP server instance
            client: REST client bound to the configured organization and project
        """
        self.mcp = mcp
        self.client = client
        self.organization_url = client.organization_url
        self.project = client.project

        # Register tools with the MCP server
        self.mcp.tool(
            name='project_health_check',
            description='Check connection to Azure DevOps and verify permissions. '
            'Requires project-scoped PAT with Agent Pools (read) permission.',
        )(self.project_health_check)
        self.mcp.tool(
            name='project_list_queues',
            description='List all agent queues available in the project with their pool information',
        )(self.project_list_queues)
        self.mcp.tool(
            name='project_get_queue',
            description='Get details of a specific agent queue by ID or name',
        )(self.project_get_queue)
        self.mcp.tool(
            name='org_find_agent',
            description='Find which pool an agent belongs to by searching all pools in the organization. '
            'Requires organization-level Agent Pools (read) permission.',
        )(self.org_find_agent)
        self.mcp.tool(
            name='org_list_agents',
            description='List agents from the project pools with optional name, pool and online filtering',
        )(self.org_list_agents)
        self.mcp.tool(
            name='build_get_timeline',
            description='Get the timeline for a build showing all jobs, tasks, and which agents executed them',
        )(self.build_get_timeline)
        self.mcp.tool(
            name='build_list',
            description='List builds with optional filtering by pipeline name, status, result, branch, '
            'or date range. Supports pagination.',
        )(self.build_list)
        self.mcp.tool(
            name='build_list_definitions',
            description='List build pipeline definitions with optional name filtering. '
            'Useful for finding pipeline IDs.',
        )(self.build_list_definitions)
        self.mcp.tool(
            name='build_queue',
            description='Queue (launch) a new build for a pipeline definition. Requires PAT with '
            '"Build (read & execute)" scope.',
        )(self.build_queue)
        self.mcp.tool(
            name='build_list_artifacts',
            description='List all artifacts available for a specific build',
        )(self.build_list_artifacts)

    def project_health_check(self, ctx: Context) -> ADOHealthCheckResponse:
        """Check the connection to Azure DevOps by reading the project's agent queues.

        Args:
            ctx: The FastMCP context

        Returns:
            ADOHealthCheckResponse describing the connection
        """
        try:
            queues = self.client.list_queues()

            logger.info(f'Health check succeeded for project {self.project}')
            logfire.info(
                'Azure DevOps health check',
                organization_url=self.organization_url,
                project=self.project,
                queue_count=len(queues),
            )

            return ADOHealthCheckResponse(
                status='success',
                message=f'Connected to Azure DevOps; {len(queues)} agent queue(s) visible',
                organization_url=self.organization_url,
                project=self.project,
            )

        except Exception as e:
            error_message, error_type = log_tool_error('checking Azure DevOps connection', e)
            return ADOHealthCheckResponse(
                status='error',
                message=error_message,
                organization_url=self.organization_url,
                project=self.project,
                error_type=error_type,
            )

    def project_list_queues(self, ctx: Context) -> ADOListQueuesResponse:
        """List all agent queues in the project.

        Args:
            ctx: The FastMCP context

        Returns:
            ADOListQueuesResponse containing the queues and their count
        """
        try:
            queues = self.client.list_queues()

            logger.info(f'Successfully retrieved {len(queues)} agent queues')
            logfire.info('Listed agent queues', count=len(queues), project=self.project)

            return ADOListQueuesResponse(
                status='success',
                message=f'Successfully retrieved agent queues from project: {self.project}',
                queues=queues,
                count=len(queues),
            )

        except Exception as e:
            error_message, error_type = log_tool_error('listing agent queues', e)
            return ADOListQueuesResponse(
                status='error', message=error_message, queues=[], count=0, error_type=error_type
            )

    def project_get_queue(self, ctx: Context, queue_id_or_name: str) -> ADOGetQueueResponse:
        """Get a specific agent queue.

        Args:
            ctx: The FastMCP context
            queue_id_or_name: Queue ID (number) or name. IDs are more reliable than names.

        Returns:
            ADOGetQueueResponse containing the queue details
        """
        try:
            if not queue_id_or_name or not str(queue_id_or_name).strip():
                raise ValueError('Queue ID or name is required')

            key = str(queue_id_or_name).strip()
            queue = self.client.get_queue(int(key) if key.isdigit() else key)

            logger.info(f'Successfully retrieved queue {queue["name"]}')
            logfire.info('Retrieved agent queue', queue_id=queue['id'], project=self.project)

            return ADOGetQueueResponse(
                status='success',
                message=f'Successfully retrieved queue: {queue["name"]}',
                queue=queue,
            )

        except Exception as e:
            error_message, error_type = log_tool_error('getting agent queue', e)
            return ADOGetQueueResponse(
                status='error', message=error_message, queue={}, error_type=error_type
            )

    def org_find_agent(self, ctx: Context, agent_name: str) -> ADOFindAgentResponse:
        """Find the pool an agent belongs to.

        Args:
            ctx: The FastMCP context
            agent_name: Exact name of the agent

        Returns:
            ADOFindAgentResponse with every agent of that name and its pool
        """
        try:
            if not agent_name or not agent_name.strip():
                raise ValueError('Agent name is required')

            matches = self.client.find_agent(agent_name.strip())

            logger.info(f'Found {len(matches)} agent(s) named {agent_name}')
            logfire.info('Found agent', agent_name=agent_name, count=len(matches))

            return ADOFindAgentResponse(
                status='success',
                message=f'Found agent: {agent_name}',
                matches=matches,
                count=len(matches),
            )

        except Exception as e:
            error_message, error_type = log_tool_error('finding agent', e)
            return ADOFindAgentResponse(
                status='error', message=error_message, matches=[], count=0, error_type=error_type
            )

    def org_list_agents(
        self,
        ctx: Context,
        name_filter: Optional[str] = None,
        pool_name_filter: Optional[str] = None,
        only_online: Optional[bool] = False,
        limit: Optional[int] = 250,
        continuation_token: Optional[str] = None,
    ) -> ADOListAgentsResponse:
        """List agents from the project's pools.

        Args:
            ctx: The FastMCP context
            name_filter: Case-insensitive partial match on the agent name
            pool_name_filter: Case-insensitive partial match on the pool name
            only_online: Only include online agents
            limit: Maximum number of agents per page
            continuation_token: Token from a previous page

        Returns:
            ADOListAgentsResponse with agents and an online/offline summary
        """
        try:
            if limit is None or limit < 1:
                raise ValueError('Limit must be a positive integer')

            result = self.client.list_project_agents(
                name_filter=name_filter,
                pool_name_filter=pool_name_filter,
                only_online=bool(only_online),
                limit=limit,
                continuation_token=continuation_token,
            )
            agents: List[Dict[str, Any]] = result['agents']
            summary = {
                'total': len(agents),
                'online': sum(1 for a in agents if a['status'] == 'Online'),
                'offline': sum(1 for a in agents if a['status'] == 'Offline'),
                'pools': sorted({a['pool_name'] for a in agents}),
                'inaccessible_pools': result['inaccessible_pools'],
            }

            logger.info(f'Successfully retrieved {len(agents)} agents')
            logfire.info(
                'Listed project agents',
                count=len(agents),
                name_filter=name_filter,
                pool_name_filter=pool_name_filter,
                only_online=only_online,
            )

            return ADOListAgentsResponse(
                status='success',
                message=f'Successfully retrieved {len(agents)} agent(s)',
                agents=agents,
                summary=summary,
                continuation_token=result['continuation_token'],
                has_more=result['has_more'],
            )

        except Exception as e:
            error_message, error_type = log_tool_error('listing agents', e)
            return ADOListAgentsResponse(
                status='error', message=error_message, agents=[], summary={}, error_type=error_type
            )

    def build_get_timeline(
        self, ctx: Context, build_id: int, timeline_id: Optional[str] = None
    ) -> ADOGetTimelineResponse:
        """Get the timeline of a build.

        Args:
            ctx: The FastMCP context
            build_id: ID of the build
            timeline_id: Optional specific timeline ID; the latest timeline otherwise

        Returns:
            ADOGetTimelineResponse with jobs, tasks and record counts
        """
        try:
            timeline = self.client.get_timeline(build_id, timeline_id)
            records = timeline.get('records') or []

            jobs = []
            tasks = []
            for record in records:
                if record.get('type') == 'Job':
                    job = _timeline_record(record)
                    job['worker_name'] = record.get('workerName')
                    jobs.append(job)
                elif record.get('type') == 'Task':
                    task = _timeline_record(record)
                    task['parent_id'] = record.get('parentId')
                    tasks.append(task)

            def count(record_type: str) -> int:
                return sum(1 for r in records if r.get('type') == record_type)

            summary = {
                'total_records': len(records),
                'stages': count('Stage'),
                'phases': count('Phase'),
                'jobs': len(jobs),
                'tasks': len(tasks),
            }

            logger.info(f'Successfully retrieved timeline for build {build_id}')
            logfire.info('Retrieved build timeline', build_id=build_id, record_count=len(records))

            return ADOGetTimelineResponse(
                status='success',
                message=f'Successfully retrieved timeline for build {build_id}',
                timeline={
                    'id': timeline.get('id'),
                    'change_id': timeline.get('changeId'),
                    'last_changed_by': timeline.get('lastChangedBy'),
                    'last_changed_on': timeline.get('lastChangedOn'),
                    'record_count': len(records),
                },
                jobs=jobs,
                tasks=tasks,
                summary=summary,
            )

        except Exception as e:
            error_message, error_type = log_tool_error('getting build timeline', e)
            return ADOGetTimelineResponse(
                status='error',
                message=error_message,
                timeline={},
                jobs=[],
                tasks=[],
                summary={},
                error_type=error_type,
            )

    def build_list(
        self,
        ctx: Context,
        limit: Optional[int] = 50,
        continuation_token: Optional[str] = None,
        definition_name_filter: Optional[str] = None,
        definition_id: Optional[int] = None,
        status: Optional[str] = None,
        result: Optional[str] = None,
        branch_name: Optional[str] = None,
        min_time: Optional[str] = None,
        max_time: Optional[str] = None,
    ) -> ADOListBuildsResponse:
        """List builds, most recently finished first.

        Args:
            ctx: The FastMCP context
            limit: Maximum number of builds per page (default 50, max 200)
            continuation_token: Token from a previous page
            definition_name_filter: Partial pipeline name; wildcards are added automatically
            definition_id: Exact pipeline definition ID
            status: One of None, InProgress, Completed, Cancelling, Postponed, NotStarted, All
            result: One of None, Succeeded, PartiallySucceeded, Failed, Canceled
            branch_name: Source branch, e.g. refs/heads/main
            min_time: Only builds after this ISO 8601 date/time
            max_time: Only builds before this ISO 8601 date/time

        Returns:
            ADOListBuildsResponse containing the builds and pagination info
        """
        try:
            limit = _validate_page_size(50 if limit is None else limit)
            if status and status not in BUILD_STATUSES:
                raise ValueError(f'Invalid status: {status}. Must be one of {", ".join(BUILD_STATUSES)}')
            if result and result not in BUILD_RESULTS:
                raise ValueError(f'Invalid result: {result}. Must be one of {", ".join(BUILD_RESULTS)}')

            try:
                min_dt = parse_datetime(min_time)
                max_dt = parse_datetime(max_time)
            except ValueError:
                raise ValueError(
                    'Invalid date format. Use ISO 8601 (e.g. "2024-01-01T00:00:00Z") '
                    'or a plain date (e.g. "2024-01-01").'
                ) from None
            if min_dt and max_dt and min_dt > max_dt:
                raise ValueError('Invalid date range: min_time must be before or equal to max_time')

            builds, next_token = self.client.list_builds(
                definition_ids=[definition_id] if definition_id is not None else None,
                definition_name_filter=definition_name_filter,
                status_filter=status,
                result_filter=result,
                branch_name=branch_name,
                min_time=min_dt,
                max_time=max_dt,
                top=limit,
                continuation_token=continuation_token,
            )
            summaries = [_build_summary(b) for b in builds]

            logger.info(f'Successfully retrieved {len(summaries)} builds')
            logfire.info(
                'Listed builds',
                count=len(summaries),
                definition_id=definition_id,
                definition_name_filter=definition_name_filter,
                status=status,
                result=result,
            )

            return ADOListBuildsResponse(
                status='success',
                message=f'Successfully retrieved {len(summaries)} build(s)',
                builds=summaries,
                continuation_token=next_token,
                has_more=bool(next_token),
                page_info={'returned': len(summaries), 'requested': limit},
            )

        except Exception as e:
            error_message, error_type = log_tool_error('listing builds', e)
            return ADOListBuildsResponse(
                status='error', message=error_message, builds=[], error_type=error_type
            )

    def build_list_definitions(
        self,
        ctx: Context,
        limit: Optional[int] = 50,
        continuation_token: Optional[str] = None,
        name_filter: Optional[str] = None,
    ) -> ADOListDefinitionsResponse:
        """List build definitions.

        Args:
            ctx: The FastMCP context
            limit: Maximum number of definitions per page (default 50, max 200)
            continuation_token: Token from a previous page
            name_filter: Partial definition name; wildcards are added automatically

        Returns:
            ADOListDefinitionsResponse containing the definitions and pagination info
        """
        try:
            limit = _validate_page_size(50 if limit is None else limit)
            definitions, next_token = self.client.list_definitions(
                name_filter=name_filter, top=limit, continuation_token=continuation_token
            )
            result = [
                {
                    'id': d.get('id'),
                    'name': d.get('name'),
                    'path': d.get('path'),
                    'type': d.get('type'),
                    'queue_status': d.get('queueStatus'),
                    'revision': d.get('revision'),
                    'created_date': d.get('createdDate'),
                    'project': (d.get('project') or {}).get('name'),
                }
                for d in definitions
            ]

            logger.info(f'Successfully retrieved {len(result)} build definitions')
            logfire.info('Listed build definitions', count=len(result), name_filter=name_filter)

            return ADOListDefinitionsResponse(
                status='success',
                message=f'Successfully retrieved {len(result)} definition(s)',
                definitions=result,
                continuation_token=next_token,
                has_more=bool(next_token),
                page_info={'returned': len(result), 'requested': limit},
            )

        except Exception as e:
            error_message, error_type = log_tool_error('listing build definitions', e)
            return ADOListDefinitionsResponse(
                status='error', message=error_message, definitions=[], error_type=error_type
            )

    def build_queue(
        self,
        ctx: Context,
        definition_id: int,
        source_branch: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> ADOQueueBuildResponse:
        """Queue a new run of a pipeline definition.

        Args:
            ctx: The FastMCP context
            definition_id: ID of the pipeline definition (see build_list_definitions)
            source_branch: Branch to build, e.g. refs/heads/main; the default branch otherwise
            parameters: Template parameters as key-value pairs

        Returns:
            ADOQueueBuildResponse with the queued run
        """
        try:
            if definition_id is None or definition_id < 1:
                raise ValueError('A positive definition ID is required')

            run = self.client.run_pipeline(
                definition_id, source_branch=source_branch, template_parameters=parameters
            )
            pipeline = run.get('pipeline') or {}
            build_info = {
                'id': run.get('id'),
                'build_number': run.get('name'),
                'status': pascal_case(run.get('state')),
                'reason': 'Manual',
                'queue_time': run.get('createdDate'),
                'source_branch': source_branch,
                'definition': {
                    'id': pipeline.get('id', definition_id),
                    'name': pipeline.get('name'),
                },
                'parameters': parameters or {},
                'url': ((run.get('_links') or {}).get('web') or {}).get('href') or run.get('url'),
            }

            logger.info(f'Queued run {build_info["id"]} of pipeline {definition_id}')
            logfire.info(
                'Queued pipeline run',
                definition_id=definition_id,
                run_id=build_info['id'],
                source_branch=source_branch,
            )

            return ADOQueueBuildResponse(
                status='success',
                message=f'Successfully queued build for definition {definition_id}',
                build_info=build_info,
            )

        except Exception as e:
            error_message, error_type = log_tool_error('queueing build', e)
            return ADOQueueBuildResponse(
                status='error', message=error_message, build_info={}, error_type=error_type
            )

    def build_list_artifacts(self, ctx: Context, build_id: int) -> ADOListArtifactsResponse:
        """List the artifacts of a build.

        Args:
            ctx: The FastMCP context
            build_id: ID of the build

        Returns:
            ADOListArtifactsResponse with artifact names, types and download URLs
        """
        try:
            artifacts = [
                {
                    'id': a.get('id'),
                    'name': a.get('name'),
                    'source': a.get('source'),
                    'type': (a.get('resource') or {}).get('type'),
                    'download_url': (a.get('resource') or {}).get('downloadUrl'),
                    'data': (a.get('resource') or {}).get('data'),
                    'properties': (a.get('resource') or {}).get('properties'),
                }
                for a in self.client.list_artifacts(build_id)
            ]

            logger.info(f'Successfully retrieved {len(artifacts)} artifacts for build {build_id}')
            logfire.info('Listed build artifacts', build_id=build_id, count=len(artifacts))

            return ADOListArtifactsResponse(
                status='success',
                message=f'Successfully retrieved artifacts for build {build_id}',
                build_id=build_id,
                artifacts=artifacts,
                count=len(artifacts),
            )

        except Exception as e:
            error_message, error_type = log_tool_error('listing build artifacts', e)
            return ADOListArtifactsResponse(
                status='error',
                message=error_message,
                build_id=build_id,
                artifacts=[],
                count=0,
                error_type=error_type,
            )
