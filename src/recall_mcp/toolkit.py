"""Recall agent toolkit - the dispatcher every session is given.

The toolkit is configured with the Recall private key, the target network and
per-resource action permissions. Tools are registered against a resource
(``account`` or ``bucket``) and an access level (``read`` or ``write``); only
the tools the configuration permits are listed and callable.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field, SecretStr

from recall_mcp import __version__
from recall_mcp.context import RequestContext
from recall_mcp.dispatcher import LowLevelDispatcher
from recall_mcp.exceptions import JSONRPCError, ProvisioningError, ToolError
from recall_mcp.types.json_rpc import INVALID_PARAMS, JSONRPCRequest
from recall_mcp.types.tools import (
    CallToolRequestParams,
    CallToolResult,
    JsonSchema,
    ListToolsRequestParams,
    ListToolsResult,
    TextContent,
    Tool,
    ToolAnnotations,
)

if TYPE_CHECKING:
    from recall_mcp.settings import Settings

logger = logging.getLogger(__name__)

Resource = Literal["account", "bucket"]
Access = Literal["read", "write"]

SERVER_NAME = "recall-mcp-server"


class ActionPermissions(BaseModel):
    read: bool = True
    write: bool = True

    def allows(self, access: Access) -> bool:
        return self.read if access == "read" else self.write


class ToolkitActions(BaseModel):
    account: ActionPermissions = Field(default_factory=ActionPermissions)
    bucket: ActionPermissions = Field(default_factory=ActionPermissions)


class ToolkitContext(BaseModel):
    network: str = "testnet"


class ToolkitConfiguration(BaseModel):
    """Which actions the toolkit exposes and which network it talks to."""

    actions: ToolkitActions = Field(default_factory=ToolkitActions)
    context: ToolkitContext = Field(default_factory=ToolkitContext)

    def allows(self, resource: Resource, access: Access) -> bool:
        permissions: ActionPermissions = getattr(self.actions, resource)
        return permissions.allows(access)


@dataclass
class ToolContext:
    """What a tool function receives alongside its arguments."""

    network: str
    request: RequestContext

    async def report_progress(self, progress: float, total: float | None = None) -> None:
        params: dict[str, Any] = {"progressToken": str(self.request.request_id), "progress": progress}
        if total is not None:
            params["total"] = total
        await self.request.send_notification("notifications/progress", params)


ToolFn = Callable[[ToolContext, dict[str, Any]], Awaitable[Any] | Any]


@dataclass
class ToolkitTool:
    """A tool definition bound to the resource and access level it needs."""

    name: str
    description: str
    resource: Resource
    access: Access
    fn: ToolFn
    input_schema: JsonSchema

    def to_tool(self) -> Tool:
        return Tool(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema,
            annotations=ToolAnnotations(
                read_only_hint=self.access == "read",
                destructive_hint=self.access == "write",
            ),
        )


class RecallToolkit(LowLevelDispatcher):
    """Per-session dispatcher serving the Recall tool catalog over MCP."""

    def __init__(
        self,
        *,
        private_key: SecretStr | str | None,
        configuration: ToolkitConfiguration | None = None,
        tools: Iterable[ToolkitTool] = (),
    ) -> None:
        if isinstance(private_key, SecretStr):
            private_key = private_key.get_secret_value()
        if not private_key:
            raise ProvisioningError("Missing RECALL_PRIVATE_KEY environment variable")

        super().__init__(name=SERVER_NAME, version=__version__)
        self._private_key = SecretStr(private_key)
        self.configuration = configuration or ToolkitConfiguration()
        self._tools: dict[str, ToolkitTool] = {}
        for tool in tools:
            self._add(tool)

        self.request_handler("tools/list")(self._list_tools)
        self.request_handler("tools/call")(self._call_tool)

    @property
    def network(self) -> str:
        return self.configuration.context.network

    @property
    def private_key(self) -> SecretStr:
        return self._private_key

    def add_tool(
        self,
        fn: ToolFn,
        *,
        name: str | None = None,
        description: str | None = None,
        resource: Resource,
        access: Access,
        input_schema: JsonSchema | dict[str, Any] | None = None,
    ) -> ToolkitTool:
        """Register a tool function under a resource and access level."""
        tool = ToolkitTool(
            name=name or fn.__name__,
            description=description or inspect.getdoc(fn) or "",
            resource=resource,
            access=access,
            fn=fn,
            input_schema=JsonSchema.model_validate(input_schema or {}),
        )
        self._add(tool)
        return tool

    def tool(
        self,
        *,
        name: str | None = None,
        description: str | None = None,
        resource: Resource,
        access: Access,
        input_schema: JsonSchema | dict[str, Any] | None = None,
    ) -> Callable[[ToolFn], ToolFn]:
        """Decorator to register a tool function."""

        def decorator(fn: ToolFn) -> ToolFn:
            self.add_tool(
                fn,
                name=name,
                description=description,
                resource=resource,
                access=access,
                input_schema=input_schema,
            )
            return fn

        return decorator

    def permitted_tools(self) -> list[ToolkitTool]:
        return [tool for tool in self._tools.values() if self.configuration.allows(tool.resource, tool.access)]

    def _add(self, tool: ToolkitTool) -> None:
        if tool.name in self._tools:
            logger.warning(f"Tool already exists: {tool.name}")
        self._tools[tool.name] = tool

    async def _list_tools(self, ctx: RequestContext, request: JSONRPCRequest) -> ListToolsResult:
        ListToolsRequestParams.model_validate(request.params or {})
        return ListToolsResult(tools=[tool.to_tool() for tool in self.permitted_tools()])

    async def _call_tool(self, ctx: RequestContext, request: JSONRPCRequest) -> CallToolResult:
        params = CallToolRequestParams.model_validate(request.params)
        tool = self._tools.get(params.name)
        if tool is None:
            raise JSONRPCError(INVALID_PARAMS, f"Unknown tool: {params.name}")
        if not self.configuration.allows(tool.resource, tool.access):
            raise JSONRPCError(INVALID_PARAMS, f"Tool not permitted by configuration: {params.name}")

        tool_ctx = ToolContext(network=self.network, request=ctx)
        try:
            result = tool.fn(tool_ctx, params.arguments or {})
            if inspect.isawaitable(result):
                result = await result
        except ToolError as e:
            return CallToolResult(content=[TextContent(text=str(e))], is_error=True)
        except Exception as e:
            logger.exception(f"Error executing tool {tool.name}")
            return CallToolResult(content=[TextContent(text=f"Error executing tool {tool.name}: {e}")], is_error=True)

        return _to_call_tool_result(result)


def _to_call_tool_result(result: Any) -> CallToolResult:
    if isinstance(result, CallToolResult):
        return result
    if isinstance(result, str):
        return CallToolResult(content=[TextContent(text=result)])
    if isinstance(result, BaseModel):
        result = result.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(result, dict):
        return CallToolResult(
            content=[TextContent(text=_dump_json(result))],
            structured_content=result,
        )
    return CallToolResult(content=[TextContent(text=_dump_json(result))])


def _dump_json(value: Any) -> str:
    return json.dumps(value, default=str)


def create_toolkit(settings: Settings, tools: Iterable[ToolkitTool] = ()) -> RecallToolkit:
    """Build a session's toolkit from settings.

    Raises:
        ProvisioningError: if the Recall private key is not configured
    """
    configuration = ToolkitConfiguration(context=ToolkitContext(network=settings.recall_network))
    return RecallToolkit(private_key=settings.recall_private_key, configuration=configuration, tools=tools)
