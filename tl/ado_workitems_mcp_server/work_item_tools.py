"""Azure DevOps MCP tools for work item tracking.

This module provides tools for reading and changing work items, comments, revisions,
links, backlogs, iterations and saved queries through the Azure DevOps REST API.
"""

import logfire
import requests
from datetime import datetime, timezone
from loguru import logger
from mcp.server.fastmcp.server import Context, FastMCP
from tl.ado_workitems_mcp_server import __version__
from tl.ado_workitems_mcp_server.auth import (
    TokenProvider,
    format_authorization_header,
    resolve_auth_scheme,
)
from tl.ado_workitems_mcp_server.config import ServerConfig
from tl.ado_workitems_mcp_server.models import (
    ADOBatchResponse,
    ADOCommentResponse,
    ADOLinkResponse,
    ADOListBacklogsResponse,
    ADOListCommentsResponse,
    ADOListRevisionsResponse,
    ADOQueryResponse,
    ADOQueryResultsResponse,
    ADOWorkItemResponse,
    ADOWorkItemsResponse,
    ADOWorkItemTypeResponse,
    BatchFieldUpdate,
    ChildWorkItem,
    WorkItemFieldUpdate,
    WorkItemFieldValue,
    WorkItemLinkUpdate,
)
from tl.ado_workitems_mcp_server.transport import MessageExtraInfo
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import quote


WIT_API_VERSION = '7.1'
WORK_API_VERSION = '7.1'
WORK_API_PREVIEW_VERSION = '7.2-preview.1'
WIT_QUERY_API_VERSION = '7.1-preview.2'
BATCH_API_VERSION = '5.0'
COMMENTS_API_VERSION = '7.2-preview.4'

REQUEST_TIMEOUT = 30
MAX_CHILD_WORK_ITEMS = 50
# Values longer than this are treated as large text fields when formatted as Markdown
MULTILINE_FORMAT_MIN_LENGTH = 50
JSON_PATCH_CONTENT_TYPE = 'application/json-patch+json'

MY_WORK_ITEMS_FIELDS = [
    'System.Id',
    'System.WorkItemType',
    'System.Title',
    'System.State',
    'System.AssignedTo',
    'System.ChangedDate',
    'System.CreatedDate',
]
DEFAULT_BATCH_FIELDS = [
    'System.Id',
    'System.WorkItemType',
    'System.Title',
    'System.State',
    'System.Parent',
    'System.Tags',
    'Microsoft.VSTS.Common.StackRank',
    'System.AssignedTo',
]
IDENTITY_FIELDS = [
    'System.AssignedTo',
    'System.CreatedBy',
    'System.ChangedBy',
    'System.AuthorizedAs',
    'Microsoft.VSTS.Common.ActivatedBy',
    'Microsoft.VSTS.Common.ResolvedBy',
    'Microsoft.VSTS.Common.ClosedBy',
]
IDENTITY_NOISE_KEYS = ('url', '_links', 'id', 'uniqueName', 'imageUrl', 'descriptor')
COMPLETED_STATES = ['Closed', 'Done', 'Completed', 'Removed']

LINK_TYPES = {
    'parent': 'System.LinkTypes.Hierarchy-Reverse',
    'child': 'System.LinkTypes.Hierarchy-Forward',
    'duplicate': 'System.LinkTypes.Duplicate-Forward',
    'duplicate of': 'System.LinkTypes.Duplicate-Reverse',
    'related': 'System.LinkTypes.Related',
    'successor': 'System.LinkTypes.Dependency-Forward',
    'predecessor': 'System.LinkTypes.Dependency-Reverse',
    'tested by': 'Microsoft.VSTS.Common.TestedBy-Forward',
    'tests': 'Microsoft.VSTS.Common.TestedBy-Reverse',
    'affects': 'Microsoft.VSTS.Common.Affects-Forward',
    'affected by': 'Microsoft.VSTS.Common.Affects-Reverse',
    'artifact': 'ArtifactLink',
}

ArtifactLinkType = Literal[
    'Branch',
    'Build',
    'Fixed in Changeset',
    'Fixed in Commit',
    'Found in build',
    'Integrated in build',
    'Model Link',
    'Pull Request',
    'Related Workitem',
    'Result Attachment',
    'Source Code File',
    'Tag',
    'Test Result',
    'Wiki',
]


def encode_formatted_value(value: str, format: Optional[str] = None) -> str:
    """Escape angle brackets in Markdown values so Azure DevOps does not read them as HTML."""
    if format == 'Markdown':
        return value.replace('<', '&lt;').replace('>', '&gt;')
    return value


def get_link_type_from_name(name: str) -> str:
    """Map a friendly link name to its Azure DevOps relation type.

    Args:
        name: Link name such as 'parent', 'tested by' or 'artifact' (any case)

    Returns:
        The relation reference name

    Raises:
        ValueError: If the name is not a known link type
    """
    try:
        return LINK_TYPES[name.lower()]
    except KeyError:
        raise ValueError(f'Unknown link type: {name}')


def encode_uri_component(value: Any) -> str:
    """Percent-encode a single URL path segment."""
    return quote(str(value), safe="!~*'()")


def _to_iso_string(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f'{value.microsecond // 1000:03d}Z'


class WorkItemTools:
    """Tools for interacting with Azure DevOps work items."""

    def __init__(self, mcp: FastMCP, config: ServerConfig, token_provider: TokenProvider) -> None:
        """Initialize the work item tools and register them with the MCP server.

        Args:
            mcp: The MCP server instance
            config: Server configuration naming the organization and project
            token_provider: Supplies the Azure DevOps token for each call
        """
        self.mcp = mcp
        self.token_provider = token_provider
        self.organization_url = config.organization_url.rstrip('/')
        self.project = config.project
        self.auth_scheme = resolve_auth_scheme(config.authentication_type)
        self.user_agent = f'AzureDevOps.MCP/{__version__}'

        logger.info(
            f'Initialized Azure DevOps work item tools for {self.organization_url} ({self.project})'
        )
        logfire.info(
            'Azure DevOps work item client initialized',
            organization_url=self.organization_url,
            project=self.project,
            auth_scheme=self.auth_scheme,
        )

        # Register tools with the MCP server
        self.mcp.tool(
            name='wit_list_backlogs',
            description='Receive a list of backlogs for a given project and team.',
        )(self.list_backlogs)
        self.mcp.tool(
            name='wit_list_backlog_work_items',
            description='Retrieve a list of backlogs of for a given project, team, and backlog category',
        )(self.list_backlog_work_items)
        self.mcp.tool(
            name='wit_my_work_items',
            description='Retrieve a list of work items relevent to the authenticated user.',
        )(self.my_work_items)
        self.mcp.tool(
            name='wit_get_work_items_batch_by_ids',
            description='Retrieve list of work items by IDs in batch.',
        )(self.get_work_items_batch_by_ids)
        self.mcp.tool(name='wit_get_work_item', description='Get a single work item by ID.')(
            self.get_work_item
        )
        self.mcp.tool(
            name='wit_list_work_item_comments',
            description='Retrieve list of comments for a work item by ID.',
        )(self.list_work_item_comments)
        self.mcp.tool(
            name='wit_add_work_item_comment', description='Add comment to a work item by ID.'
        )(self.add_work_item_comment)
        self.mcp.tool(
            name='wit_list_work_item_revisions',
            description='Retrieve list of revisions for a work item by ID.',
        )(self.list_work_item_revisions)
        self.mcp.tool(
            name='wit_add_child_work_items',
            description='Create one or many child work items from a parent by work item type and parent id.',
        )(self.add_child_work_items)
        self.mcp.tool(
            name='wit_link_work_item_to_pull_request',
            description='Link a single work item to an existing pull request.',
        )(self.link_work_item_to_pull_request)
        self.mcp.tool(
            name='wit_get_work_items_for_iteration',
            description='Retrieve a list of work items for a specified iteration.',
        )(self.get_work_items_for_iteration)
        self.mcp.tool(
            name='wit_update_work_item',
            description='Update a work item by ID with specified fields.',
        )(self.update_work_item)
        self.mcp.tool(name='wit_get_work_item_type', description='Get a specific work item type.')(
            self.get_work_item_type
        )
        self.mcp.tool(
            name='wit_create_work_item',
            description='Create a new work item in a specified project and work item type.',
        )(self.create_work_item)
        self.mcp.tool(name='wit_get_query', description='Get a query by its ID or path.')(
            self.get_query
        )
        self.mcp.tool(
            name='wit_get_query_results_by_id',
            description=(
                'Retrieve the results of a work item query given the query ID. '
                'Supports full or IDs-only response types.'
            ),
        )(self.get_query_results_by_id)
        self.mcp.tool(
            name='wit_update_work_items_batch', description='Update work items in batch'
        )(self.update_work_items_batch)
        self.mcp.tool(
            name='wit_work_items_link', description='Link work items together in batch.'
        )(self.work_items_link)
        self.mcp.tool(
            name='wit_work_item_unlink',
            description='Remove one or many links from a single work item',
        )(self.work_item_unlink)
        self.mcp.tool(
            name='wit_add_artifact_link',
            description=(
                'Add artifact links (repository, branch, commit, builds) to work items. '
                'You can either provide the full vstfs URI or the individual components '
                'to build it automatically.'
            ),
        )(self.add_artifact_link)

    def _request_extra(self, ctx: Optional[Context]) -> Optional[MessageExtraInfo]:
        """Return the transport's MessageExtraInfo for the request being handled, if any."""
        if ctx is None:
            return None
        try:
            request = ctx.request_context.request
        except ValueError:
            return None
        return request if isinstance(request, MessageExtraInfo) else None

    def _user_agent(self, ctx: Optional[Context]) -> str:
        """Return the User-Agent, naming the MCP client once it has initialized its session."""
        if ctx is None:
            return self.user_agent
        try:
            client_params = ctx.request_context.session.client_params
        except (AttributeError, ValueError):
            return self.user_agent

        client_info = getattr(client_params, 'clientInfo', None)
        if client_info is None or not client_info.name or not client_info.version:
            return self.user_agent
        return f'{self.user_agent} {client_info.name}/{client_info.version}'

    def _request_ado(
        self,
        ctx: Optional[Context],
        method: str,
        path: str,
        api_version: str = WIT_API_VERSION,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
        content_type: Optional[str] = None,
    ) -> requests.Response:
        """Call the Azure DevOps REST API.

        Args:
            ctx: The FastMCP context of the tool call, used to find the caller's credential
            method: HTTP method
            path: Path below the organization URL, starting with '/'
            api_version: Value of the api-version query parameter
            params: Extra query parameters. None values are dropped.
            body: JSON body, or None for no body
            content_type: Content type of the body, defaults to application/json

        Returns:
            The successful response

        Raises:
            requests.HTTPError: If Azure DevOps answers with a non-2xx status
        """
        token = self.token_provider(self._request_extra(ctx))

        query: Dict[str, Any] = {}
        for key, value in (params or {}).items():
            if value is None:
                continue
            if isinstance(value, bool):
                value = 'true' if value else 'false'
            query[key] = value
        query['api-version'] = api_version

        headers = {
            'Authorization': format_authorization_header(token, self.auth_scheme),
            'User-Agent': self._user_agent(ctx),
            'Accept': 'application/json',
        }
        if body is not None:
            headers['Content-Type'] = content_type or 'application/json'

        response = requests.request(
            method,
            f'{self.organization_url}{path}',
            headers=headers,
            params=query,
            json=body,
            timeout=REQUEST_TIMEOUT,
        )
        if not response.ok:
            raise requests.HTTPError(
                f'{response.status_code} {response.reason}: {response.text}', response=response
            )
        return response

    def _request_ado_json(self, ctx: Optional[Context], method: str, path: str, **kwargs: Any) -> Any:
        response = self._request_ado(ctx, method, path, **kwargs)
        if not response.content:
            return {}
        return response.json()

    def _log_failure(self, prefix: str, error: Exception) -> str:
        error_message = f'{prefix}: {str(error)}'
        logger.error(error_message)
        logfire.error('Azure DevOps work item tool failed', error=str(error))
        return error_message

    def _work_item_url(self, work_item_id: int) -> str:
        return f'{self.organization_url}/{self.project}/_apis/wit/workItems/{work_item_id}'

    def list_backlogs(self, ctx: Context, team: str) -> ADOListBacklogsResponse:
        """List the backlog levels of a team.

        Args:
            ctx: The FastMCP context
            team: The name or ID of the Azure DevOps team

        Returns:
            ADOListBacklogsResponse containing the backlogs and their count
        """
        try:
            path = (
                f'/{encode_uri_component(self.project)}/{encode_uri_component(team)}'
                '/_apis/work/backlogs'
            )
            data = self._request_ado_json(ctx, 'GET', path, api_version=WORK_API_VERSION)
            backlogs = data.get('value', [])

            logger.info(f'Retrieved {len(backlogs)} backlogs for team {team}')
            logfire.info('Listed backlogs', team=team, count=len(backlogs))

            return ADOListBacklogsResponse(
                status='success',
                message=f'Successfully retrieved backlogs for team {team}',
                backlogs=backlogs,
                count=len(backlogs),
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while listing backlogs', e)
            return ADOListBacklogsResponse(status='error', message=error_message, backlogs=[], count=0)
        except Exception as e:
            error_message = self._log_failure('Error listing backlogs', e)
            return ADOListBacklogsResponse(status='error', message=error_message, backlogs=[], count=0)

    def list_backlog_work_items(
        self, ctx: Context, team: str, backlog_id: str
    ) -> ADOWorkItemsResponse:
        """List the work items on one backlog level of a team.

        Args:
            ctx: The FastMCP context
            team: The name or ID of the Azure DevOps team
            backlog_id: The ID of the backlog category, e.g. 'Microsoft.RequirementCategory'

        Returns:
            ADOWorkItemsResponse containing the backlog's work item links
        """
        try:
            path = (
                f'/{encode_uri_component(self.project)}/{encode_uri_component(team)}'
                f'/_apis/work/backlogs/{encode_uri_component(backlog_id)}/workItems'
            )
            data = self._request_ado_json(ctx, 'GET', path, api_version=WORK_API_VERSION)
            work_items = data.get('workItems', [])

            logger.info(f'Retrieved {len(work_items)} work items from backlog {backlog_id}')
            logfire.info(
                'Listed backlog work items', team=team, backlog_id=backlog_id, count=len(work_items)
            )

            return ADOWorkItemsResponse(
                status='success',
                message=f'Successfully retrieved work items for backlog {backlog_id}',
                work_items=work_items,
                count=len(work_items),
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while listing backlog work items', e)
            return ADOWorkItemsResponse(status='error', message=error_message, work_items=[], count=0)
        except Exception as e:
            error_message = self._log_failure('Error listing backlog work items', e)
            return ADOWorkItemsResponse(status='error', message=error_message, work_items=[], count=0)

    def my_work_items(
        self,
        ctx: Context,
        type: Literal['assignedtome', 'myactivity'] = 'assignedtome',
        top: int = 50,
        include_completed: bool = False,
    ) -> ADOWorkItemsResponse:
        """List the work items assigned to, or recently changed by, the authenticated user.

        Args:
            ctx: The FastMCP context
            type: 'assignedtome' or 'myactivity'
            top: Maximum number of work items to return
            include_completed: Whether to include work items in a completed state

        Returns:
            ADOWorkItemsResponse containing the work items, most recently changed first
        """
        try:
            conditions = ['[System.TeamProject] = @project']
            if type == 'assignedtome':
                conditions.append('[System.AssignedTo] = @Me')
            if type == 'myactivity':
                conditions.append('[System.ChangedBy] = @Me')
            if not include_completed:
                conditions.extend(f"[System.State] <> '{state}'" for state in COMPLETED_STATES)

            wiql = (
                f'Select [System.Id] From WorkItems Where {" And ".join(conditions)} '
                'Order By [System.ChangedDate] Desc'
            )
            project_path = f'/{encode_uri_component(self.project)}'
            wiql_result = self._request_ado_json(
                ctx, 'POST', f'{project_path}/_apis/wit/wiql', body={'query': wiql}
            )

            ids = [
                item['id'] for item in wiql_result.get('workItems', []) if item.get('id') is not None
            ][:top]

            work_items: List[Dict[str, Any]] = []
            if ids:
                batch = self._request_ado_json(
                    ctx,
                    'POST',
                    f'{project_path}/_apis/wit/workitemsbatch',
                    body={'ids': ids, 'fields': MY_WORK_ITEMS_FIELDS},
                )
                work_items = batch.get('value', [])

            logger.info(f'Retrieved {len(work_items)} work items for the current user ({type})')
            logfire.info(
                'Listed my work items',
                type=type,
                count=len(work_items),
                include_completed=include_completed,
            )

            return ADOWorkItemsResponse(
                status='success',
                message='Successfully retrieved work items for the current user',
                work_items=work_items,
                count=len(work_items),
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while retrieving work items', e)
            return ADOWorkItemsResponse(status='error', message=error_message, work_items=[], count=0)
        except Exception as e:
            error_message = self._log_failure('Error retrieving work items', e)
            return ADOWorkItemsResponse(status='error', message=error_message, work_items=[], count=0)

    def get_work_items_batch_by_ids(
        self, ctx: Context, ids: List[int], fields: Optional[List[str]] = None
    ) -> ADOWorkItemsResponse:
        """Get several work items at once.

        Identity fields such as System.AssignedTo are flattened to 'Name <unique name>'.

        Args:
            ctx: The FastMCP context
            ids: The IDs of the work items to retrieve
            fields: Fields to include. A default summary set is used when omitted.

        Returns:
            ADOWorkItemsResponse containing the work items
        """
        try:
            data = self._request_ado_json(
                ctx,
                'POST',
                f'/{encode_uri_component(self.project)}/_apis/wit/workitemsbatch',
                body={'ids': ids, 'fields': fields or DEFAULT_BATCH_FIELDS},
            )
            work_items = data.get('value', [])

            for item in work_items:
                item_fields = item.get('fields') or {}
                for field_name in IDENTITY_FIELDS:
                    identity = item_fields.get(field_name)
                    if identity and isinstance(identity, dict):
                        name = identity.get('displayName') or ''
                        email = identity.get('uniqueName') or ''
                        item_fields[field_name] = f'{name} <{email}>'.strip()

            logger.info(f'Retrieved {len(work_items)} of {len(ids)} requested work items')
            logfire.info('Retrieved work items batch', requested=len(ids), count=len(work_items))

            return ADOWorkItemsResponse(
                status='success',
                message='Successfully retrieved work items',
                work_items=work_items,
                count=len(work_items),
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while retrieving work items batch', e)
            return ADOWorkItemsResponse(status='error', message=error_message, work_items=[], count=0)
        except Exception as e:
            error_message = self._log_failure('Error retrieving work items batch', e)
            return ADOWorkItemsResponse(status='error', message=error_message, work_items=[], count=0)

    def get_work_item(
        self,
        ctx: Context,
        id: int,
        fields: Optional[List[str]] = None,
        as_of: Optional[datetime] = None,
        expand: Optional[Literal['all', 'fields', 'links', 'none', 'relations']] = None,
    ) -> ADOWorkItemResponse:
        """Get a single work item.

        Args:
            ctx: The FastMCP context
            id: The ID of the work item
            fields: Fields to include, all fields when omitted
            as_of: Return the work item as it was at this time
            expand: 'all', 'fields', 'links', 'none' or 'relations'. Relations lists child work items.

        Returns:
            ADOWorkItemResponse containing the work item
        """
        try:
            work_item = self._request_ado_json(
                ctx,
                'GET',
                f'/{encode_uri_component(self.project)}/_apis/wit/workitems/{id}',
                params={
                    'fields': ','.join(fields) if fields else None,
                    'asOf': _to_iso_string(as_of) if as_of else None,
                    '$expand': expand.lower() if expand else None,
                },
            )

            logger.info(f'Retrieved work item {id}')
            logfire.info('Retrieved work item', work_item_id=id, expand=expand)

            return ADOWorkItemResponse(
                status='success',
                message=f'Successfully retrieved work item {id}',
                work_item=work_item,
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while retrieving work item', e)
            return ADOWorkItemResponse(status='error', message=error_message, work_item={})
        except Exception as e:
            error_message = self._log_failure('Error retrieving work item', e)
            return ADOWorkItemResponse(status='error', message=error_message, work_item={})

    def list_work_item_comments(
        self, ctx: Context, work_item_id: int, top: int = 50
    ) -> ADOListCommentsResponse:
        """List the comments on a work item.

        Args:
            ctx: The FastMCP context
            work_item_id: The ID of the work item
            top: Maximum number of comments to return

        Returns:
            ADOListCommentsResponse containing the comments
        """
        try:
            data = self._request_ado_json(
                ctx,
                'GET',
                f'/{encode_uri_component(self.project)}/_apis/wit/workItems/{work_item_id}/comments',
                api_version=COMMENTS_API_VERSION,
                params={'$top': top},
            )
            comments = data.get('comments', [])
            total_count = data.get('totalCount', len(comments))

            logger.info(f'Retrieved {len(comments)} comments for work item {work_item_id}')
            logfire.info('Listed work item comments', work_item_id=work_item_id, count=len(comments))

            return ADOListCommentsResponse(
                status='success',
                message=f'Successfully retrieved comments for work item {work_item_id}',
                comments=comments,
                count=len(comments),
                total_count=total_count,
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while listing work item comments', e)
            return ADOListCommentsResponse(
                status='error', message=error_message, comments=[], count=0, total_count=0
            )
        except Exception as e:
            error_message = self._log_failure('Error listing work item comments', e)
            return ADOListCommentsResponse(
                status='error', message=error_message, comments=[], count=0, total_count=0
            )

    def add_work_item_comment(
        self,
        ctx: Context,
        work_item_id: int,
        comment: str,
        format: Literal['markdown', 'html'] = 'html',
    ) -> ADOCommentResponse:
        """Add a comment to a work item.

        Args:
            ctx: The FastMCP context
            work_item_id: The ID of the work item
            comment: Text of the comment
            format: 'markdown' or 'html'

        Returns:
            ADOCommentResponse containing the created comment
        """
        try:
            created = self._request_ado_json(
                ctx,
                'POST',
                f'/{encode_uri_component(self.project)}/_apis/wit/workItems/{work_item_id}/comments',
                api_version=COMMENTS_API_VERSION,
                params={'format': 0 if format == 'markdown' else 1},
                body={'text': comment},
            )

            logger.info(f'Added comment to work item {work_item_id}')
            logfire.info('Added work item comment', work_item_id=work_item_id, format=format)

            return ADOCommentResponse(
                status='success',
                message=f'Successfully added comment to work item {work_item_id}',
                comment=created,
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while adding work item comment', e)
            return ADOCommentResponse(status='error', message=error_message, comment={})
        except Exception as e:
            error_message = self._log_failure('Error adding work item comment', e)
            return ADOCommentResponse(status='error', message=error_message, comment={})

    def list_work_item_revisions(
        self,
        ctx: Context,
        work_item_id: int,
        top: int = 50,
        skip: Optional[int] = None,
        expand: Optional[Literal['None', 'Relations', 'Fields', 'Links', 'All']] = 'None',
    ) -> ADOListRevisionsResponse:
        """List the revisions of a work item.

        Identity objects in revision fields keep only their display name.

        Args:
            ctx: The FastMCP context
            work_item_id: The ID of the work item
            top: Maximum number of revisions to return
            skip: Number of revisions to skip
            expand: 'None', 'Relations', 'Fields', 'Links' or 'All'

        Returns:
            ADOListRevisionsResponse containing the revisions
        """
        try:
            data = self._request_ado_json(
                ctx,
                'GET',
                f'/{encode_uri_component(self.project)}/_apis/wit/workItems/{work_item_id}/revisions',
                params={
                    '$top': top,
                    '$skip': skip,
                    '$expand': expand.lower() if expand else None,
                },
            )
            revisions = data.get('value', [])

            for revision in revisions:
                for value in (revision.get('fields') or {}).values():
                    is_identity = (
                        isinstance(value, dict)
                        and 'displayName' in value
                        and ('url' in value or '_links' in value or 'uniqueName' in value)
                    )
                    if is_identity:
                        for key in IDENTITY_NOISE_KEYS:
                            value.pop(key, None)

            logger.info(f'Retrieved {len(revisions)} revisions for work item {work_item_id}')
            logfire.info(
                'Listed work item revisions', work_item_id=work_item_id, count=len(revisions)
            )

            return ADOListRevisionsResponse(
                status='success',
                message=f'Successfully retrieved revisions for work item {work_item_id}',
                revisions=revisions,
                count=len(revisions),
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while listing work item revisions', e)
            return ADOListRevisionsResponse(status='error', message=error_message, revisions=[], count=0)
        except Exception as e:
            error_message = self._log_failure('Error listing work item revisions', e)
            return ADOListRevisionsResponse(status='error', message=error_message, revisions=[], count=0)

    def add_child_work_items(
        self, ctx: Context, parent_id: int, work_item_type: str, items: List[ChildWorkItem]
    ) -> ADOBatchResponse:
        """Create child work items under a parent in one batch call.

        Args:
            ctx: The FastMCP context
            parent_id: The ID of the parent work item
            work_item_type: The type of the child work items, e.g. 'Task'
            items: The child work items to create

        Returns:
            ADOBatchResponse with one result per created work item
        """
        try:
            if len(items) > MAX_CHILD_WORK_ITEMS:
                error_message = (
                    f'A maximum of {MAX_CHILD_WORK_ITEMS} child work items can be created in a single call.'
                )
                logger.warning(error_message)
                return ADOBatchResponse(status='error', message=error_message, results=[], count=0)

            body = []
            for index, item in enumerate(items):
                description = encode_formatted_value(item.description, item.format)
                operations = [
                    {'op': 'add', 'path': '/id', 'value': f'-{index + 1}'},
                    {'op': 'add', 'path': '/fields/System.Title', 'value': item.title},
                    {'op': 'add', 'path': '/fields/System.Description', 'value': description},
                    {
                        'op': 'add',
                        'path': '/fields/Microsoft.VSTS.TCM.ReproSteps',
                        'value': description,
                    },
                    {
                        'op': 'add',
                        'path': '/relations/-',
                        'value': {
                            'rel': 'System.LinkTypes.Hierarchy-Reverse',
                            'url': self._work_item_url(parent_id),
                        },
                    },
                ]
                if item.area_path and item.area_path.strip():
                    operations.append(
                        {'op': 'add', 'path': '/fields/System.AreaPath', 'value': item.area_path}
                    )
                if item.iteration_path and item.iteration_path.strip():
                    operations.append(
                        {
                            'op': 'add',
                            'path': '/fields/System.IterationPath',
                            'value': item.iteration_path,
                        }
                    )
                if item.format == 'Markdown':
                    operations.append(
                        {
                            'op': 'add',
                            'path': '/multilineFieldsFormat/System.Description',
                            'value': item.format,
                        }
                    )
                    operations.append(
                        {
                            'op': 'add',
                            'path': '/multilineFieldsFormat/Microsoft.VSTS.TCM.ReproSteps',
                            'value': item.format,
                        }
                    )

                body.append(
                    {
                        'method': 'PATCH',
                        'uri': (
                            f'/{self.project}/_apis/wit/workitems/${work_item_type}'
                            f'?api-version={BATCH_API_VERSION}'
                        ),
                        'headers': {'Content-Type': JSON_PATCH_CONTENT_TYPE},
                        'body': operations,
                    }
                )

            data = self._request_ado_json(
                ctx, 'PATCH', '/_apis/wit/$batch', api_version=BATCH_API_VERSION, body=body
            )
            results = data.get('value', [])

            logger.info(f'Created {len(items)} child work items under work item {parent_id}')
            logfire.info(
                'Created child work items',
                parent_id=parent_id,
                work_item_type=work_item_type,
                count=len(items),
            )

            return ADOBatchResponse(
                status='success',
                message=f'Successfully created child work items under work item {parent_id}',
                results=results,
                count=data.get('count', len(results)),
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while creating child work items', e)
            return ADOBatchResponse(status='error', message=error_message, results=[], count=0)
        except Exception as e:
            error_message = self._log_failure('Error creating child work items', e)
            return ADOBatchResponse(status='error', message=error_message, results=[], count=0)

    def link_work_item_to_pull_request(
        self,
        ctx: Context,
        project_id: str,
        repository_id: str,
        pull_request_id: int,
        work_item_id: int,
        pull_request_project_id: Optional[str] = None,
    ) -> ADOLinkResponse:
        """Link a work item to an existing pull request.

        Args:
            ctx: The FastMCP context
            project_id: ID of the work item's project (the project name is not accepted)
            repository_id: ID of the repository holding the pull request
            pull_request_id: ID of the pull request
            work_item_id: ID of the work item
            pull_request_project_id: Project ID holding the pull request, defaults to project_id

        Returns:
            ADOLinkResponse describing the new link
        """
        try:
            artifact_project_id = (
                pull_request_project_id
                if pull_request_project_id and pull_request_project_id.strip()
                else project_id
            )
            artifact_uri = 'vstfs:///Git/PullRequestId/' + encode_uri_component(
                f'{artifact_project_id}/{repository_id}/{pull_request_id}'
            )
            patch_document = [
                {
                    'op': 'add',
                    'path': '/relations/-',
                    'value': {
                        'rel': 'ArtifactLink',
                        'url': artifact_uri,
                        'attributes': {'name': 'Pull Request'},
                    },
                }
            ]

            work_item = self._request_ado_json(
                ctx,
                'PATCH',
                f'/{encode_uri_component(project_id)}/_apis/wit/workitems/{work_item_id}',
                body=patch_document,
                content_type=JSON_PATCH_CONTENT_TYPE,
            )
            if not work_item:
                return ADOLinkResponse(status='error', message='Work item update failed', link_info={})

            logger.info(f'Linked work item {work_item_id} to pull request {pull_request_id}')
            logfire.info(
                'Linked work item to pull request',
                work_item_id=work_item_id,
                pull_request_id=pull_request_id,
            )

            return ADOLinkResponse(
                status='success',
                message=f'Successfully linked work item {work_item_id} to pull request {pull_request_id}',
                link_info={
                    'work_item_id': work_item_id,
                    'pull_request_id': pull_request_id,
                    'artifact_uri': artifact_uri,
                },
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while linking work item to pull request', e)
            return ADOLinkResponse(status='error', message=error_message, link_info={})
        except Exception as e:
            error_message = self._log_failure('Error linking work item to pull request', e)
            return ADOLinkResponse(status='error', message=error_message, link_info={})

    def get_work_items_for_iteration(
        self, ctx: Context, iteration_id: str, team: Optional[str] = None
    ) -> ADOWorkItemsResponse:
        """List the work items planned in an iteration.

        Args:
            ctx: The FastMCP context
            iteration_id: The ID of the iteration
            team: The name or ID of the team, the project's default team when omitted

        Returns:
            ADOWorkItemsResponse containing the iteration's work item relations
        """
        try:
            team_segment = f'/{encode_uri_component(team)}' if team else ''
            data = self._request_ado_json(
                ctx,
                'GET',
                f'/{encode_uri_component(self.project)}{team_segment}/_apis/work/teamsettings'
                f'/iterations/{encode_uri_component(iteration_id)}/workitems',
                api_version=WORK_API_PREVIEW_VERSION,
            )
            work_items = data.get('workItemRelations', [])

            logger.info(f'Retrieved {len(work_items)} work items for iteration {iteration_id}')
            logfire.info(
                'Listed iteration work items', iteration_id=iteration_id, count=len(work_items)
            )

            return ADOWorkItemsResponse(
                status='success',
                message=f'Successfully retrieved work items for iteration {iteration_id}',
                work_items=work_items,
                count=len(work_items),
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while retrieving work items for iteration', e)
            return ADOWorkItemsResponse(status='error', message=error_message, work_items=[], count=0)
        except Exception as e:
            error_message = self._log_failure('Error retrieving work items for iteration', e)
            return ADOWorkItemsResponse(status='error', message=error_message, work_items=[], count=0)

    def update_work_item(
        self, ctx: Context, id: int, updates: List[WorkItemFieldUpdate]
    ) -> ADOWorkItemResponse:
        """Apply JSON patch operations to a work item.

        Args:
            ctx: The FastMCP context
            id: The ID of the work item
            updates: Operations to apply. 'op' is case-insensitive.

        Returns:
            ADOWorkItemResponse containing the updated work item
        """
        try:
            patch_document = []
            for update in updates:
                op = update.op.lower()
                if op not in ('add', 'replace', 'remove'):
                    raise ValueError(f"Invalid operation '{update.op}', expected add, replace or remove")
                operation: Dict[str, Any] = {'op': op, 'path': update.path}
                if update.value is not None:
                    operation['value'] = update.value
                patch_document.append(operation)

            work_item = self._request_ado_json(
                ctx,
                'PATCH',
                f'/{encode_uri_component(self.project)}/_apis/wit/workitems/{id}',
                body=patch_document,
                content_type=JSON_PATCH_CONTENT_TYPE,
            )

            logger.info(f'Updated work item {id} with {len(patch_document)} operations')
            logfire.info('Updated work item', work_item_id=id, operations=len(patch_document))

            return ADOWorkItemResponse(
                status='success',
                message=f'Successfully updated work item {id}',
                work_item=work_item,
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while updating work item', e)
            return ADOWorkItemResponse(status='error', message=error_message, work_item={})
        except Exception as e:
            error_message = self._log_failure('Error updating work item', e)
            return ADOWorkItemResponse(status='error', message=error_message, work_item={})

    def get_work_item_type(self, ctx: Context, work_item_type: str) -> ADOWorkItemTypeResponse:
        """Get the definition of a work item type.

        Args:
            ctx: The FastMCP context
            work_item_type: Name of the work item type, e.g. 'Bug'

        Returns:
            ADOWorkItemTypeResponse containing the type definition
        """
        try:
            definition = self._request_ado_json(
                ctx,
                'GET',
                f'/{encode_uri_component(self.project)}/_apis/wit/workitemtypes/'
                f'{encode_uri_component(work_item_type)}',
            )

            logger.info(f'Retrieved work item type {work_item_type}')
            logfire.info('Retrieved work item type', work_item_type=work_item_type)

            return ADOWorkItemTypeResponse(
                status='success',
                message=f'Successfully retrieved work item type {work_item_type}',
                work_item_type=definition,
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while retrieving work item type', e)
            return ADOWorkItemTypeResponse(status='error', message=error_message, work_item_type={})
        except Exception as e:
            error_message = self._log_failure('Error retrieving work item type', e)
            return ADOWorkItemTypeResponse(status='error', message=error_message, work_item_type={})

    def create_work_item(
        self, ctx: Context, work_item_type: str, fields: List[WorkItemFieldValue]
    ) -> ADOWorkItemResponse:
        """Create a work item.

        Args:
            ctx: The FastMCP context
            work_item_type: The type of work item to create, e.g. 'Task' or 'Bug'
            fields: Field names and values to set on the new work item

        Returns:
            ADOWorkItemResponse containing the created work item
        """
        try:
            document = [
                {
                    'op': 'add',
                    'path': f'/fields/{field.name}',
                    'value': encode_formatted_value(field.value, field.format),
                }
                for field in fields
            ]
            for field in fields:
                if field.format == 'Markdown' and len(field.value) > MULTILINE_FORMAT_MIN_LENGTH:
                    document.append(
                        {
                            'op': 'add',
                            'path': f'/multilineFieldsFormat/{field.name}',
                            'value': 'Markdown',
                        }
                    )

            work_item = self._request_ado_json(
                ctx,
                'PATCH',
                f'/{encode_uri_component(self.project)}/_apis/wit/workitems/'
                f'${encode_uri_component(work_item_type)}',
                body=document,
                content_type=JSON_PATCH_CONTENT_TYPE,
            )
            if not work_item:
                return ADOWorkItemResponse(
                    status='error', message='Work item was not created', work_item={}
                )

            logger.info(f'Created {work_item_type} work item {work_item.get("id")}')
            logfire.info(
                'Created work item', work_item_type=work_item_type, work_item_id=work_item.get('id')
            )

            return ADOWorkItemResponse(
                status='success',
                message=f'Successfully created {work_item_type} work item',
                work_item=work_item,
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while creating work item', e)
            return ADOWorkItemResponse(status='error', message=error_message, work_item={})
        except Exception as e:
            error_message = self._log_failure('Error creating work item', e)
            return ADOWorkItemResponse(status='error', message=error_message, work_item={})

    def get_query(
        self,
        ctx: Context,
        query: str,
        expand: Optional[Literal['None', 'Wiql', 'Clauses', 'All', 'Minimal']] = None,
        depth: int = 0,
        include_deleted: bool = False,
        use_iso_date_format: bool = False,
    ) -> ADOQueryResponse:
        """Get a saved query or query folder by ID or path.

        Args:
            ctx: The FastMCP context
            query: The ID or path of the query, e.g. 'Shared Queries/Active Bugs'
            expand: 'None', 'Wiql', 'Clauses', 'All' or 'Minimal'
            depth: How deep to expand query folders
            include_deleted: Whether to include deleted queries
            use_iso_date_format: Whether to return dates in ISO format

        Returns:
            ADOQueryResponse containing the query
        """
        try:
            encoded_query = '/'.join(
                encode_uri_component(segment) for segment in query.split('/') if segment
            )
            details = self._request_ado_json(
                ctx,
                'GET',
                f'/{encode_uri_component(self.project)}/_apis/wit/queries/{encoded_query}',
                api_version=WIT_QUERY_API_VERSION,
                params={
                    '$expand': expand.lower() if expand else None,
                    'depth': depth,
                    'includeDeleted': include_deleted,
                    'useIsoDateFormat': use_iso_date_format,
                },
            )

            logger.info(f'Retrieved query {query}')
            logfire.info('Retrieved query', query=query, depth=depth)

            return ADOQueryResponse(
                status='success', message=f'Successfully retrieved query {query}', query=details
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while retrieving query', e)
            return ADOQueryResponse(status='error', message=error_message, query={})
        except Exception as e:
            error_message = self._log_failure('Error retrieving query', e)
            return ADOQueryResponse(status='error', message=error_message, query={})

    def get_query_results_by_id(
        self,
        ctx: Context,
        id: str,
        team: Optional[str] = None,
        time_precision: Optional[bool] = None,
        top: int = 50,
        response_type: Literal['full', 'ids'] = 'full',
    ) -> ADOQueryResultsResponse:
        """Run a saved query and return its results.

        Args:
            ctx: The FastMCP context
            id: The ID of the query
            team: The name or ID of the team, the project's default team when omitted
            time_precision: Whether to include time precision in date comparisons
            top: Maximum number of results
            response_type: 'full' for the complete result, 'ids' for work item ids only

        Returns:
            ADOQueryResultsResponse containing the results and the work item ids
        """
        try:
            team_segment = f'/{encode_uri_component(team)}' if team else ''
            data = self._request_ado_json(
                ctx,
                'GET',
                f'/{encode_uri_component(self.project)}{team_segment}/_apis/wit/wiql/'
                f'{encode_uri_component(id)}',
                api_version=WIT_QUERY_API_VERSION,
                params={'timePrecision': time_precision, '$top': top},
            )
            ids = [item['id'] for item in data.get('workItems') or [] if item.get('id') is not None]

            logger.info(f'Query {id} returned {len(ids)} work items')
            logfire.info('Ran query', query_id=id, count=len(ids), response_type=response_type)

            return ADOQueryResultsResponse(
                status='success',
                message=f'Successfully retrieved results for query {id}',
                results={} if response_type == 'ids' else data,
                ids=ids,
                count=len(ids),
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while retrieving query results', e)
            return ADOQueryResultsResponse(
                status='error', message=error_message, results={}, ids=[], count=0
            )
        except Exception as e:
            error_message = self._log_failure('Error retrieving query results', e)
            return ADOQueryResultsResponse(
                status='error', message=error_message, results={}, ids=[], count=0
            )

    def update_work_items_batch(
        self, ctx: Context, updates: List[BatchFieldUpdate]
    ) -> ADOBatchResponse:
        """Update fields on several work items in one batch call.

        Args:
            ctx: The FastMCP context
            updates: Field updates, each naming the work item it applies to

        Returns:
            ADOBatchResponse with one result per updated work item
        """
        try:
            body = []
            for work_item_id in dict.fromkeys(update.id for update in updates):
                item_updates = [update for update in updates if update.id == work_item_id]
                operations = [
                    {
                        'op': update.op,
                        'path': update.path,
                        'value': encode_formatted_value(update.value, update.format),
                    }
                    for update in item_updates
                ]
                for update in item_updates:
                    if update.format == 'Markdown' and len(update.value) > MULTILINE_FORMAT_MIN_LENGTH:
                        operations.append(
                            {
                                'op': 'Add',
                                'path': '/multilineFieldsFormat' + update.path.replace('/fields', '', 1),
                                'value': 'Markdown',
                            }
                        )
                body.append(
                    {
                        'method': 'PATCH',
                        'uri': f'/_apis/wit/workitems/{work_item_id}?api-version={BATCH_API_VERSION}',
                        'headers': {'Content-Type': JSON_PATCH_CONTENT_TYPE},
                        'body': operations,
                    }
                )

            data = self._request_ado_json(
                ctx, 'PATCH', '/_apis/wit/$batch', api_version=BATCH_API_VERSION, body=body
            )
            results = data.get('value', [])

            logger.info(f'Updated {len(body)} work items in batch')
            logfire.info('Updated work items batch', work_items=len(body), updates=len(updates))

            return ADOBatchResponse(
                status='success',
                message=f'Successfully updated {len(body)} work items',
                results=results,
                count=data.get('count', len(results)),
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while updating work items in batch', e)
            return ADOBatchResponse(status='error', message=error_message, results=[], count=0)
        except Exception as e:
            error_message = self._log_failure('Error updating work items in batch', e)
            return ADOBatchResponse(status='error', message=error_message, results=[], count=0)

    def work_items_link(self, ctx: Context, updates: List[WorkItemLinkUpdate]) -> ADOBatchResponse:
        """Link work items together in one batch call.

        Args:
            ctx: The FastMCP context
            updates: Links to create, each from 'id' to 'link_to_id'

        Returns:
            ADOBatchResponse with one result per updated work item
        """
        try:
            body = []
            for work_item_id in dict.fromkeys(update.id for update in updates):
                operations = [
                    {
                        'op': 'add',
                        'path': '/relations/-',
                        'value': {
                            'rel': get_link_type_from_name(update.type),
                            'url': self._work_item_url(update.link_to_id),
                            'attributes': {'comment': update.comment or ''},
                        },
                    }
                    for update in updates
                    if update.id == work_item_id
                ]
                body.append(
                    {
                        'method': 'PATCH',
                        'uri': f'/_apis/wit/workitems/{work_item_id}?api-version={BATCH_API_VERSION}',
                        'headers': {'Content-Type': JSON_PATCH_CONTENT_TYPE},
                        'body': operations,
                    }
                )

            data = self._request_ado_json(
                ctx, 'PATCH', '/_apis/wit/$batch', api_version=BATCH_API_VERSION, body=body
            )
            results = data.get('value', [])

            logger.info(f'Created {len(updates)} links across {len(body)} work items')
            logfire.info('Linked work items', links=len(updates), work_items=len(body))

            return ADOBatchResponse(
                status='success',
                message=f'Successfully linked {len(body)} work items',
                results=results,
                count=data.get('count', len(results)),
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while linking work items', e)
            return ADOBatchResponse(status='error', message=error_message, results=[], count=0)
        except Exception as e:
            error_message = self._log_failure('Error linking work items', e)
            return ADOBatchResponse(status='error', message=error_message, results=[], count=0)

    def work_item_unlink(
        self,
        ctx: Context,
        id: int,
        type: Literal[
            'parent',
            'child',
            'duplicate',
            'duplicate of',
            'related',
            'successor',
            'predecessor',
            'tested by',
            'tests',
            'affects',
            'affected by',
            'artifact',
        ] = 'related',
        url: Optional[str] = None,
    ) -> ADOLinkResponse:
        """Remove links from a work item.

        Args:
            ctx: The FastMCP context
            id: The ID of the work item
            type: Type of link to remove, used when no url is given
            url: Remove only the links pointing at this URL

        Returns:
            ADOLinkResponse listing the removed relations and the updated work item
        """
        try:
            work_item = self._request_ado_json(
                ctx,
                'GET',
                f'/{encode_uri_component(self.project)}/_apis/wit/workitems/{id}',
                params={'$expand': 'relations'},
            )
            relations = work_item.get('relations') or []
            link_type = get_link_type_from_name(type)

            if url and url.strip():
                indexes = [index for index, relation in enumerate(relations) if relation.get('url') == url]
            else:
                indexes = [
                    index for index, relation in enumerate(relations) if relation.get('rel') == link_type
                ]

            if not indexes:
                error_message = f"No matching relations found for link type '{type}'"
                if url:
                    error_message += f" and URL '{url}'"
                logger.warning(f'{error_message} on work item {id}')
                return ADOLinkResponse(
                    status='error', message=f'{error_message}.', link_info={'relations': relations}
                )

            removed = [relations[index] for index in indexes]
            # Highest index first so earlier removals do not shift later ones
            patch_document = [
                {'op': 'remove', 'path': f'/relations/{index}'} for index in sorted(indexes, reverse=True)
            ]
            updated = self._request_ado_json(
                ctx,
                'PATCH',
                f'/{encode_uri_component(self.project)}/_apis/wit/workitems/{id}',
                body=patch_document,
                content_type=JSON_PATCH_CONTENT_TYPE,
            )

            logger.info(f'Removed {len(removed)} links of type {type} from work item {id}')
            logfire.info('Unlinked work item', work_item_id=id, type=type, removed=len(removed))

            return ADOLinkResponse(
                status='success',
                message=f"Removed {len(removed)} link(s) of type '{type}'",
                link_info={'removed': removed, 'work_item': updated},
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while unlinking work item', e)
            return ADOLinkResponse(status='error', message=error_message, link_info={})
        except Exception as e:
            error_message = self._log_failure('Error unlinking work item', e)
            return ADOLinkResponse(status='error', message=error_message, link_info={})

    def _build_artifact_uri(
        self,
        link_type: str,
        project_id: Optional[str],
        repository_id: Optional[str],
        branch_name: Optional[str],
        commit_id: Optional[str],
        pull_request_id: Optional[int],
        build_id: Optional[int],
    ) -> str:
        """Build the vstfs URI for an artifact link from its components.

        Raises:
            ValueError: If a component the link type needs is missing, or the link
                type cannot be built from components
        """
        if link_type == 'Branch':
            if not project_id or not repository_id or not branch_name:
                raise ValueError(
                    "For 'Branch' links, 'project_id', 'repository_id', and 'branch_name' are required."
                )
            return (
                f'vstfs:///Git/Ref/{encode_uri_component(project_id)}%2F'
                f'{encode_uri_component(repository_id)}%2FGB{encode_uri_component(branch_name)}'
            )
        if link_type == 'Fixed in Commit':
            if not project_id or not repository_id or not commit_id:
                raise ValueError(
                    "For 'Fixed in Commit' links, 'project_id', 'repository_id', and 'commit_id' are required."
                )
            return (
                f'vstfs:///Git/Commit/{encode_uri_component(project_id)}%2F'
                f'{encode_uri_component(repository_id)}%2F{encode_uri_component(commit_id)}'
            )
        if link_type == 'Pull Request':
            if not project_id or not repository_id or pull_request_id is None:
                raise ValueError(
                    "For 'Pull Request' links, 'project_id', 'repository_id', and 'pull_request_id' are required."
                )
            return (
                f'vstfs:///Git/PullRequestId/{encode_uri_component(project_id)}%2F'
                f'{encode_uri_component(repository_id)}%2F{encode_uri_component(pull_request_id)}'
            )
        if link_type in ('Build', 'Found in build', 'Integrated in build'):
            if build_id is None:
                raise ValueError(f"For '{link_type}' links, 'build_id' is required.")
            return f'vstfs:///Build/Build/{encode_uri_component(build_id)}'
        raise ValueError(
            f"URI building from components is not supported for link type '{link_type}'. "
            "Please provide the full 'artifact_uri' instead."
        )

    def add_artifact_link(
        self,
        ctx: Context,
        work_item_id: int,
        artifact_uri: Optional[str] = None,
        project_id: Optional[str] = None,
        repository_id: Optional[str] = None,
        branch_name: Optional[str] = None,
        commit_id: Optional[str] = None,
        pull_request_id: Optional[int] = None,
        build_id: Optional[int] = None,
        link_type: ArtifactLinkType = 'Branch',
        comment: Optional[str] = None,
    ) -> ADOLinkResponse:
        """Add an artifact link (branch, commit, pull request, build, ...) to a work item.

        Either pass the complete vstfs URI as artifact_uri, or pass the components the
        link type needs and the URI is built from them.

        Args:
            ctx: The FastMCP context
            work_item_id: The ID of the work item
            artifact_uri: Complete vstfs URI. Component arguments are ignored when given.
            project_id: Project ID (GUID), needed for Git artifacts
            repository_id: Repository ID (GUID), needed for Git artifacts
            branch_name: Branch name, needed for 'Branch' links
            commit_id: Commit SHA, needed for 'Fixed in Commit' links
            pull_request_id: Pull request ID, needed for 'Pull Request' links
            build_id: Build ID, needed for the build link types
            link_type: Type of artifact link
            comment: Comment to store on the link

        Returns:
            ADOLinkResponse describing the new link
        """
        try:
            if artifact_uri:
                final_uri = artifact_uri
            else:
                try:
                    final_uri = self._build_artifact_uri(
                        link_type,
                        project_id,
                        repository_id,
                        branch_name,
                        commit_id,
                        pull_request_id,
                        build_id,
                    )
                except ValueError as e:
                    logger.warning(f'Cannot build artifact link for work item {work_item_id}: {e}')
                    return ADOLinkResponse(status='error', message=str(e), link_info={})

            attributes: Dict[str, Any] = {'name': link_type}
            if comment:
                attributes['comment'] = comment
            patch_document = [
                {
                    'op': 'add',
                    'path': '/relations/-',
                    'value': {'rel': 'ArtifactLink', 'url': final_uri, 'attributes': attributes},
                }
            ]

            work_item = self._request_ado_json(
                ctx,
                'PATCH',
                f'/{encode_uri_component(self.project)}/_apis/wit/workitems/{work_item_id}',
                body=patch_document,
                content_type=JSON_PATCH_CONTENT_TYPE,
            )
            if not work_item:
                return ADOLinkResponse(status='error', message='Work item update failed', link_info={})

            logger.info(f'Added {link_type} artifact link to work item {work_item_id}')
            logfire.info(
                'Added artifact link', work_item_id=work_item_id, link_type=link_type, artifact_uri=final_uri
            )

            return ADOLinkResponse(
                status='success',
                message=f'Successfully added {link_type} link to work item {work_item_id}',
                link_info={
                    'work_item_id': work_item_id,
                    'artifact_uri': final_uri,
                    'link_type': link_type,
                    'comment': comment or None,
                },
            )

        except requests.exceptions.RequestException as e:
            error_message = self._log_failure('HTTP error while adding artifact link to work item', e)
            return ADOLinkResponse(status='error', message=error_message, link_info={})
        except Exception as e:
            error_message = self._log_failure('Error adding artifact link to work item', e)
            return ADOLinkResponse(status='error', message=error_message, link_info={})
