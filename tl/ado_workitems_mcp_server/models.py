from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional


class ADOWorkItemResponse(Dict[str, Any]):
    """Response model for operations on a single work item."""

    def __init__(self, status: str, message: str, work_item: Dict[str, Any]):
        """Initialize Azure DevOps work item response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            work_item: The work item as returned by Azure DevOps
        """
        super().__init__({'status': status, 'message': message, 'work_item': work_item})
        self.status = status
        self.message = message
        self.work_item = work_item


class ADOWorkItemsResponse(Dict[str, Any]):
    """Response model for listing work items in Azure DevOps."""

    def __init__(self, status: str, message: str, work_items: List[Dict[str, Any]], count: int):
        """Initialize Azure DevOps work items response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            work_items: List of work item information
            count: Number of work items returned
        """
        super().__init__(
            {'status': status, 'message': message, 'work_items': work_items, 'count': count}
        )
        self.status = status
        self.message = message
        self.work_items = work_items
        self.count = count


class ADOListBacklogsResponse(Dict[str, Any]):
    """Response model for listing backlogs of a team."""

    def __init__(self, status: str, message: str, backlogs: List[Dict[str, Any]], count: int):
        """Initialize Azure DevOps backlogs response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            backlogs: List of backlog levels
            count: Number of backlogs returned
        """
        super().__init__(
            {'status': status, 'message': message, 'backlogs': backlogs, 'count': count}
        )
        self.status = status
        self.message = message
        self.backlogs = backlogs
        self.count = count


class ADOListCommentsResponse(Dict[str, Any]):
    """Response model for listing work item comments."""

    def __init__(
        self,
        status: str,
        message: str,
        comments: List[Dict[str, Any]],
        count: int,
        total_count: int,
    ):
        """Initialize Azure DevOps comments response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            comments: List of comments on the work item
            count: Number of comments returned
            total_count: Number of comments on the work item
        """
        super().__init__(
            {
                'status': status,
                'message': message,
                'comments': comments,
                'count': count,
                'total_count': total_count,
            }
        )
        self.status = status
        self.message = message
        self.comments = comments
        self.count = count
        self.total_count = total_count


class ADOCommentResponse(Dict[str, Any]):
    """Response model for adding a comment to a work item."""

    def __init__(self, status: str, message: str, comment: Dict[str, Any]):
        super().__init__({'status': status, 'message': message, 'comment': comment})
        self.status = status
        self.message = message
        self.comment = comment


class ADOListRevisionsResponse(Dict[str, Any]):
    """Response model for listing work item revisions."""

    def __init__(self, status: str, message: str, revisions: List[Dict[str, Any]], count: int):
        """Initialize Azure DevOps revisions response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            revisions: List of revisions with identity fields trimmed
            count: Number of revisions returned
        """
        super().__init__(
            {'status': status, 'message': message, 'revisions': revisions, 'count': count}
        )
        self.status = status
        self.message = message
        self.revisions = revisions
        self.count = count


class ADOBatchResponse(Dict[str, Any]):
    """Response model for calls to the work item $batch endpoint."""

    def __init__(self, status: str, message: str, results: List[Dict[str, Any]], count: int):
        """Initialize Azure DevOps batch response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            results: One entry per batched request, as returned by Azure DevOps
            count: Number of batched requests answered
        """
        super().__init__(
            {'status': status, 'message': message, 'results': results, 'count': count}
        )
        self.status = status
        self.message = message
        self.results = results
        self.count = count


class ADOWorkItemTypeResponse(Dict[str, Any]):
    """Response model for getting a work item type."""

    def __init__(self, status: str, message: str, work_item_type: Dict[str, Any]):
        super().__init__(
            {'status': status, 'message': message, 'work_item_type': work_item_type}
        )
        self.status = status
        self.message = message
        self.work_item_type = work_item_type


class ADOQueryResponse(Dict[str, Any]):
    """Response model for getting a saved work item query."""

    def __init__(self, status: str, message: str, query: Dict[str, Any]):
        super().__init__({'status': status, 'message': message, 'query': query})
        self.status = status
        self.message = message
        self.query = query


class ADOQueryResultsResponse(Dict[str, Any]):
    """Response model for running a saved work item query."""

    def __init__(
        self,
        status: str,
        message: str,
        results: Dict[str, Any],
        ids: List[int],
        count: int,
    ):
        """Initialize Azure DevOps query results response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            results: Full query result, empty when only ids were requested
            ids: Ids of the work items the query returned
            count: Number of work items the query returned
        """
        super().__init__(
            {'status': status, 'message': message, 'results': results, 'ids': ids, 'count': count}
        )
        self.status = status
        self.message = message
        self.results = results
        self.ids = ids
        self.count = count


class ADOLinkResponse(Dict[str, Any]):
    """Response model for adding or removing work item links."""

    def __init__(self, status: str, message: str, link_info: Dict[str, Any]):
        """Initialize Azure DevOps link response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            link_info: Details of the links that were added or removed
        """
        super().__init__({'status': status, 'message': message, 'link_info': link_info})
        self.status = status
        self.message = message
        self.link_info = link_info


# Tool inputs

FieldFormat = Literal['Html', 'Markdown']
LinkName = Literal[
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
]


class ChildWorkItem(BaseModel):
    """A child work item to create under a parent."""

    title: str = Field(description='The title of the child work item.')
    description: str = Field(description='The description of the child work item.')
    format: FieldFormat = Field(
        default='Html', description="Format for the description, 'Markdown' or 'Html'."
    )
    area_path: Optional[str] = Field(default=None, description='Optional area path.')
    iteration_path: Optional[str] = Field(default=None, description='Optional iteration path.')


class WorkItemFieldUpdate(BaseModel):
    """A JSON patch operation on a single work item."""

    op: str = Field(default='add', description="One of 'add', 'replace' or 'remove'.")
    path: str = Field(description="The path of the field to update, e.g. '/fields/System.Title'.")
    value: Optional[str] = Field(
        default=None, description="The new value. Omit for 'remove' operations."
    )


class WorkItemFieldValue(BaseModel):
    """A field value for a new work item."""

    name: str = Field(description="The name of the field, e.g. 'System.Title'.")
    value: str = Field(description='The value of the field.')
    format: Optional[FieldFormat] = Field(
        default=None, description="The format of the value, 'Html' or 'Markdown'."
    )


class BatchFieldUpdate(BaseModel):
    """A field update applied to one of several work items."""

    op: Literal['Add', 'Replace', 'Remove'] = Field(default='Add')
    id: int = Field(description='The ID of the work item to update.')
    path: str = Field(description="The path of the field to update, e.g. '/fields/System.Title'.")
    value: str = Field(description='The new value for the field.')
    format: Optional[FieldFormat] = Field(
        default=None, description='The format of the value. Only used for large text fields.'
    )


class WorkItemLinkUpdate(BaseModel):
    """A link to create between two work items."""

    id: int = Field(description='The ID of the work item to update.')
    link_to_id: int = Field(description='The ID of the work item to link to.')
    type: LinkName = Field(default='related', description='Type of link to create.')
    comment: Optional[str] = Field(default=None, description='Optional comment for the link.')
