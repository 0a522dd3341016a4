"""Azure DevOps Work Items MCP Server Package.

This package exposes Azure DevOps work item tracking as Model Context Protocol (MCP) tools,
served over a Streamable HTTP transport built for plain request/response handlers.
"""

__version__ = '0.1.0'
__author__ = 'TechniumLabs'
__description__ = 'Azure DevOps work items MCP server with a request/response Streamable HTTP transport'
