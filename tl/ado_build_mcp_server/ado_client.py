"""Thin client for the Azure DevOps REST API.

Covers the task agent (queues, pools, agents), build, and pipelines areas
used by the MCP tools. Responses are returned as the decoded JSON from the
service; failures are raised as the exceptions in
``tl.ado_build_mcp_server.exceptions``.
"""

import base64
import requests
from datetime import datetime
from loguru import logger
from pathlib import Path
from tl.ado_build_mcp_server.config import AzureDevOpsConfig
from tl.ado_build_mcp_server.exceptions import (
    AdoApiError,
    AdoMcpError,
    AdoPermissionError,
    FilesystemError,
    NotFoundError,
)
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import quote

API_VERSION = '7.1'
CHUNK_SIZE = 64 * 1024
AGENT_POOLS_READ = 'Agent Pools (Read)'
BUILD_READ = 'Build (Read)'
BUILD_EXECUTE = 'Build (Read & Execute)'
MAX_DEFINITIONS = 1000


def _first_lower(value: str) -> str:
    return value[:1].lower() + value[1:] if value else value


def _agent_status(agent: Dict[str, Any]) -> str:
    status = str(agent.get('status') or '').lower()
    if status == 'online':
        return 'Online'
    if status == 'offline':
        return 'Offline'
    return 'Unknown'


def _agent_info(agent: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': agent.get('id'),
        'name': agent.get('name'),
        'status': _agent_status(agent),
        'enabled': agent.get('enabled', True),
        'version': agent.get('version'),
        'os_description': agent.get('osDescription'),
    }


def _queue_info(queue: Dict[str, Any]) -> Dict[str, Any]:
    pool = queue.get('pool') or {}
    return {
        'id': queue.get('id'),
        'name': queue.get('name'),
        'pool_id': pool.get('id', 0),
        'pool_name': pool.get('name') or 'Unknown',
        'is_hosted': pool.get('isHosted', False),
    }


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or response.reason
    if isinstance(body, dict) and body.get('message'):
        return body['message']
    return str(body)[:500]


class AzureDevOpsClient:
    """REST client bound to one organization and project."""

    def __init__(self, config: AzureDevOpsConfig, timeout: int = 30) -> None:
        """Initialize the client.

        Args:
            config: Server configuration holding organization, project and PAT
            timeout: Timeout in seconds for every request
        """
        self.config = config
        self.organization_url = config.organization_url
        self.project = config.project
        self.timeout = timeout

        # Create basic authentication header using PAT
        credentials = base64.b64encode(f':{config.personal_access_token}'.encode()).decode()
        self.headers = {
            'Authorization': f'Basic {credentials}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    def _org_url(self, path: str) -> str:
        return f'{self.organization_url}_apis/{path}'

    def _project_url(self, path: str) -> str:
        return f'{self.organization_url}{quote(self.project)}/_apis/{path}'

    def _request(
        self,
        method: str,
        url: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        permission: str = 'appropriate',
        not_found: Tuple[str, Any] = ('Resource', 'requested'),
        stream: bool = False,
        authenticated: bool = True,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        """Send a request and map HTTP failures onto server exceptions."""
        query: Dict[str, Any] = {}
        if authenticated:
            query['api-version'] = API_VERSION
        if params:
            query.update({k: v for k, v in params.items() if v is not None})

        request_headers = dict(self.headers) if authenticated else {}
        if headers:
            request_headers.update(headers)

        try:
            response = requests.request(
                method,
                url,
                headers=request_headers,
                params=query,
                json=json,
                timeout=self.timeout,
                stream=stream,
            )
        except requests.exceptions.RequestException as e:
            raise AdoApiError(f'HTTP error during {operation}: {str(e)}') from e

        if response.status_code in (401, 403):
            response.close()
            raise AdoPermissionError(operation, permission)
        if response.status_code == 404:
            response.close()
            raise NotFoundError(*not_found)
        if response.status_code >= 400:
            message = _error_message(response)
            response.close()
            raise AdoApiError(f'Failed to {operation}: {message}', response.status_code)
        return response

    def _get_json(self, url: str, operation: str, **kwargs: Any) -> Any:
        response = self._request('GET', url, operation, **kwargs)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise AdoApiError(f'Failed to {operation}: response was not JSON') from e

    def _stream_to_file(self, response: requests.Response, destination: Path, operation: str) -> int:
        written = 0
        try:
            with open(destination, 'wb') as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
        except OSError as e:
            raise FilesystemError(destination, e) from e
        except requests.exceptions.RequestException as e:
            raise AdoApiError(f'HTTP error during {operation}: {str(e)}') from e
        finally:
            response.close()
        return written

    # Queues and agents

    def list_queues(self) -> List[Dict[str, Any]]:
        """List the agent queues of the project."""
        data = self._get_json(
            self._project_url('distributedtask/queues'),
            'list agent queues',
            permission=AGENT_POOLS_READ,
        ) or {}
        queues = [
            _queue_info(q)
            for q in data.get('value', [])
            if q.get('id') is not None and q.get('name') and q.get('pool')
        ]
        queues.sort(key=lambda q: q['name'].lower())
        return queues

    def get_queue(self, queue_id_or_name: Union[int, str]) -> Dict[str, Any]:
        """Find a project queue by id or (case-insensitive) name."""
        for queue in self.list_queues():
            if isinstance(queue_id_or_name, int):
                if queue['id'] == queue_id_or_name:
                    return queue
            elif queue['name'].lower() == str(queue_id_or_name).strip().lower():
                return queue
        raise NotFoundError('Queue', queue_id_or_name)

    def find_agent(self, agent_name: str) -> List[Dict[str, Any]]:
        """Search every pool of the organization for an agent with this name.

        Pools the PAT cannot read are skipped.
        """
        data = self._get_json(
            self._org_url('distributedtask/pools'),
            'search for agents',
            permission=AGENT_POOLS_READ,
        ) or {}

        found = []
        for pool in data.get('value', []):
            pool_id = pool.get('id')
            if pool_id is None:
                continue
            try:
                agents = self._get_json(
                    self._org_url(f'distributedtask/pools/{pool_id}/agents'),
                    f'list agents in pool {pool_id}',
                    params={'agentName': agent_name},
                    permission=AGENT_POOLS_READ,
                ) or {}
            except AdoMcpError as e:
                logger.debug(f'Skipping pool {pool.get("name")}: {str(e)}')
                continue

            for agent in agents.get('value', []):
                if agent.get('id') is None or not agent.get('name'):
                    continue
                found.append(
                    {
                        'agent': _agent_info(agent),
                        'pool_id': pool_id,
                        'pool_name': pool.get('name') or 'Unknown',
                    }
                )

        if not found:
            raise NotFoundError('Agent', agent_name)
        return found

    def list_project_agents(
        self,
        name_filter: Optional[str] = None,
        pool_name_filter: Optional[str] = None,
        only_online: bool = False,
        limit: int = 250,
        continuation_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """List agents in the pools behind the project's queues.

        Agents are de-duplicated by id, sorted by name and paginated with an
        offset continuation token.
        """
        offset = self._parse_offset(continuation_token)
        data = self._get_json(
            self._project_url('distributedtask/queues'),
            'list agent queues',
            params={'actionFilter': 'use'},
            permission=AGENT_POOLS_READ,
        ) or {}

        queues = data.get('value', [])
        if pool_name_filter:
            needle = pool_name_filter.lower()
            queues = [q for q in queues if needle in ((q.get('pool') or {}).get('name') or '').lower()]

        agents_by_id: Dict[int, Dict[str, Any]] = {}
        inaccessible_pools: List[str] = []
        for queue in queues:
            pool = queue.get('pool') or {}
            if queue.get('id') is None or not queue.get('name') or pool.get('id') is None:
                continue
            try:
                agents = self._get_json(
                    self._org_url(f'distributedtask/pools/{pool["id"]}/agents'),
                    f"list agents in queue '{queue['name']}'",
                    permission=AGENT_POOLS_READ,
                ) or {}
            except AdoMcpError as e:
                inaccessible_pools.append(queue['name'])
                logger.warning(f"Cannot access agents for queue '{queue['name']}': {str(e)}")
                continue

            for agent in agents.get('value', []):
                if agent.get('id') is None or not agent.get('name'):
                    continue
                if name_filter and name_filter.lower() not in agent['name'].lower():
                    continue
                info = _agent_info(agent)
                if only_online and info['status'] != 'Online':
                    continue
                info.update(
                    {
                        'pool_name': pool.get('name') or 'Unknown',
                        'queue_id': queue['id'],
                        'queue_name': queue['name'],
                    }
                )
                agents_by_id.setdefault(agent['id'], info)

        if inaccessible_pools:
            logger.warning(
                f'Limited results: could not access agents in {len(inaccessible_pools)} '
                f'pool(s): {", ".join(inaccessible_pools)}'
            )

        agents = sorted(agents_by_id.values(), key=lambda a: a['name'].lower())
        page = agents[offset : offset + limit]
        has_more = offset + limit < len(agents)
        return {
            'agents': page,
            'continuation_token': str(offset + limit) if has_more else None,
            'has_more': has_more,
            'inaccessible_pools': inaccessible_pools,
        }

    # Builds and definitions

    @staticmethod
    def _parse_offset(continuation_token: Optional[str]) -> int:
        if not continuation_token:
            return 0
        try:
            offset = int(continuation_token)
        except ValueError:
            raise ValueError(f'Invalid continuation token: {continuation_token}') from None
        if offset < 0:
            raise ValueError(f'Invalid continuation token: {continuation_token}')
        return offset

    def get_build(self, build_id: int) -> Dict[str, Any]:
        build = self._get_json(
            self._project_url(f'build/builds/{build_id}'),
            f'get build {build_id}',
            permission=BUILD_READ,
            not_found=('Build', build_id),
        )
        if not build:
            raise NotFoundError('Build', build_id)
        return build

    def list_builds(
        self,
        definition_ids: Optional[List[int]] = None,
        definition_name_filter: Optional[str] = None,
        status_filter: Optional[str] = None,
        result_filter: Optional[str] = None,
        branch_name: Optional[str] = None,
        min_time: Optional[datetime] = None,
        max_time: Optional[datetime] = None,
        top: int = 50,
        continuation_token: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """List builds, newest finished first.

        Returns:
            Tuple of the builds and the service continuation token (or None)
        """
        if definition_name_filter and not definition_ids:
            definitions, _ = self.list_definitions(definition_name_filter, top=MAX_DEFINITIONS)
            if not definitions:
                return [], None
            definition_ids = [d['id'] for d in definitions]

        params = {
            'definitions': ','.join(str(i) for i in definition_ids) if definition_ids else None,
            'statusFilter': _first_lower(status_filter) if status_filter else None,
            'resultFilter': _first_lower(result_filter) if result_filter else None,
            'branchName': branch_name,
            'minTime': min_time.isoformat() if min_time else None,
            'maxTime': max_time.isoformat() if max_time else None,
            '$top': top,
            'continuationToken': continuation_token,
            'queryOrder': 'finishTimeDescending',
        }
        response = self._request(
            'GET',
            self._project_url('build/builds'),
            'list builds',
            params=params,
            permission=BUILD_READ,
        )
        try:
            data = response.json()
        except ValueError as e:
            raise AdoApiError('Failed to list builds: response was not JSON') from e
        return data.get('value', []), response.headers.get('x-ms-continuationtoken') or None

    def list_definitions(
        self,
        name_filter: Optional[str] = None,
        top: int = 50,
        continuation_token: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """List build definitions with client-side offset pagination.

        A name filter without ``*`` is wrapped in wildcards for partial matching.

        Returns:
            Tuple of the page of definitions and the next offset token (or None)
        """
        offset = self._parse_offset(continuation_token)
        if name_filter and '*' not in name_filter:
            name_filter = f'*{name_filter}*'

        # One extra result tells us whether another page exists
        data = self._get_json(
            self._project_url('build/definitions'),
            'list build definitions',
            params={
                'name': name_filter,
                '$top': offset + top + 1,
                'queryOrder': 'lastModifiedDescending',
            },
            permission=BUILD_READ,
        ) or {}
        definitions = data.get('value', [])
        page = definitions[offset : offset + top]
        has_more = len(definitions) > offset + top
        return page, str(offset + top) if has_more else None

    def get_timeline(self, build_id: int, timeline_id: Optional[str] = None) -> Dict[str, Any]:
        path = f'build/builds/{build_id}/timeline'
        if timeline_id:
            path = f'{path}/{timeline_id}'
        timeline = self._get_json(
            self._project_url(path),
            f'get timeline for build {build_id}',
            permission=BUILD_READ,
            not_found=('Build', build_id),
        )
        if not timeline:
            raise NotFoundError('Timeline', f'build {build_id}')
        return timeline

    def download_log(self, build_id: int, log_id: int, destination: Path) -> int:
        """Stream a build log to ``destination``; returns the number of bytes written."""
        response = self._request(
            'GET',
            self._project_url(f'build/builds/{build_id}/logs/{log_id}'),
            f'download log {log_id} of build {build_id}',
            permission=BUILD_READ,
            not_found=('Log', f'{log_id} of build {build_id}'),
            stream=True,
            headers={'Accept': 'text/plain'},
        )
        return self._stream_to_file(response, destination, f'download log {log_id}')

    def list_artifacts(self, build_id: int) -> List[Dict[str, Any]]:
        data = self._get_json(
            self._project_url(f'build/builds/{build_id}/artifacts'),
            f'list artifacts of build {build_id}',
            permission=BUILD_READ,
            not_found=('Build', build_id),
        ) or {}
        return data.get('value', [])

    def get_pipeline_artifact(
        self, definition_id: int, build_id: int, artifact_name: str
    ) -> Dict[str, Any]:
        """Fetch a pipeline artifact with its signed download URL expanded."""
        artifact = self._get_json(
            self._project_url(f'pipelines/{definition_id}/runs/{build_id}/artifacts'),
            f'get artifact {artifact_name}',
            params={'artifactName': artifact_name, '$expand': 'signedContent'},
            permission=BUILD_READ,
            not_found=('Artifact', artifact_name),
        )
        if not artifact:
            raise NotFoundError('Artifact', artifact_name)
        return artifact

    def download_url(self, url: str, destination: Path) -> int:
        """Stream a pre-signed URL to ``destination`` without the PAT header."""
        response = self._request(
            'GET',
            url,
            'download signed content',
            stream=True,
            authenticated=False,
        )
        return self._stream_to_file(response, destination, 'download signed content')

    # Pipelines

    def run_pipeline(
        self,
        pipeline_id: int,
        source_branch: Optional[str] = None,
        template_parameters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if template_parameters:
            body['templateParameters'] = template_parameters
        if source_branch:
            body['resources'] = {'repositories': {'self': {'refName': source_branch}}}

        response = self._request(
            'POST',
            self._project_url(f'pipelines/{pipeline_id}/runs'),
            f'run pipeline {pipeline_id}',
            json=body,
            permission=BUILD_EXECUTE,
            not_found=('Pipeline', pipeline_id),
        )
        try:
            return response.json()
        except ValueError as e:
            raise AdoApiError(f'Failed to run pipeline {pipeline_id}: response was not JSON') from e
