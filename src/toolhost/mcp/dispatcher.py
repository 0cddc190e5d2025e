"""
Request dispatcher for MCP protocol.

This module parses incoming JSON-RPC envelopes, routes them to the registry,
validator and supervisor, and produces exactly one correlated response per
accepted request.
"""

import enum
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Set, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from toolhost import __version__
from toolhost.mcp.errors import (
    ErrorKind,
    ErrorObject,
    InvalidParamsError,
    InvalidRequestError,
    MessageParseError,
    MethodNotFoundError,
    ToolError,
    make_error,
    map_failure,
)
from toolhost.mcp.messages import (
    CancelledParams,
    InitializeParams,
    InitializeResult,
    JSONRPCMessage,
    RequestEnvelope,
    ResourceReadParams,
    ResponseEnvelope,
    ServerInfo,
    SetLevelParams,
    ToolCallParams,
    resources_to_wire,
)
from toolhost.mcp.resources import ResourceLocator
from toolhost.mcp.tools.formatter import ToolResponseFormatter
from toolhost.mcp.tools.models import LOOKUP
from toolhost.mcp.tools.registry import ToolNotFoundError, ToolRegistry
from toolhost.mcp.tools.supervisor import DuplicateRequestError, ExecutionSupervisor
from toolhost.mcp.tools.validator import SchemaValidator

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}


class CallState(str, enum.Enum):
    """Lifecycle of one request inside the dispatcher."""

    RECEIVED = "Received"
    VALIDATING = "Validating"
    REJECTED = "Rejected"
    DISPATCHING = "Dispatching"
    EXECUTING = "Executing"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    RESPONDING = "Responding"
    ERROR_RESPONDING = "ErrorResponding"
    CLOSED = "Closed"


MethodHandler = Callable[[JSONRPCMessage], Awaitable[Union[Any, ErrorObject]]]


class RequestDispatcher:
    """Routes JSON-RPC requests to tools, resources and protocol methods."""

    def __init__(
        self,
        registry: ToolRegistry,
        supervisor: Optional[ExecutionSupervisor] = None,
        resources: Optional[ResourceLocator] = None,
        server_info: Optional[ServerInfo] = None,
        instructions: Optional[str] = None,
        validator: Optional[SchemaValidator] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            registry: The tool registry; it is frozen here
            supervisor: The execution supervisor, or None to create one with defaults
            resources: The resource locator, or None for a server without resources
            server_info: Name and version reported by ``initialize``
            instructions: Optional usage hint reported by ``initialize``
            validator: The schema validator, or None to create a new one
        """
        self.registry = registry.freeze()
        self.supervisor = supervisor if supervisor is not None else ExecutionSupervisor()
        self.resources = resources if resources is not None else ResourceLocator()
        self.validator = validator if validator is not None else SchemaValidator()
        self.formatter = ToolResponseFormatter()
        self.server_info = server_info or ServerInfo(name="toolhost", version=__version__)
        self.instructions = instructions
        self.initialized = False
        self.on_transition: Optional[Callable[[Hashable, CallState], None]] = None
        self._open_ids: Set[Hashable] = set()
        self._methods: Dict[str, MethodHandler] = {
            "initialize": self._initialize,
            "ping": self._ping,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
            "resources/list": self._list_resources,
            "resources/read": self._read_resource,
            "prompts/list": self._list_prompts,
            "logging/setLevel": self._set_level,
        }
        self._notifications: Dict[str, Callable[[JSONRPCMessage], Awaitable[None]]] = {
            "notifications/initialized": self._on_initialized,
            "notifications/cancelled": self._on_cancelled,
        }

    def _transition(self, request_id: Hashable, state: CallState) -> None:
        logger.debug(f"[{request_id!r}] {state.value}")
        if self.on_transition is not None:
            self.on_transition(request_id, state)

    @staticmethod
    def parse(raw: Union[str, bytes, Dict[str, Any]]) -> JSONRPCMessage:
        """
        Parse an incoming message.

        Args:
            raw: A JSON text line, its bytes, or an already decoded object

        Returns:
            The parsed JSON-RPC message

        Raises:
            MessageParseError: If the text is not valid JSON
            InvalidRequestError: If the JSON is not a JSON-RPC request
        """
        data = raw
        if isinstance(raw, (bytes, bytearray)):
            try:
                data = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MessageParseError(f"Message is not valid UTF-8: {e}") from e
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                raise MessageParseError(f"Invalid JSON: {e}") from e

        if isinstance(data, list):
            raise InvalidRequestError("Batch requests are not supported")
        if not isinstance(data, dict):
            raise InvalidRequestError("A request must be a JSON object")

        try:
            return JSONRPCMessage.model_validate(data)
        except ValidationError as e:
            problems = "; ".join(f"{'.'.join(map(str, err['loc'])) or 'message'}: {err['msg']}" for err in e.errors())
            raise InvalidRequestError(f"Invalid JSON-RPC request: {problems}") from e

    async def handle(self, raw: Union[str, bytes, Dict[str, Any]]) -> Optional[ResponseEnvelope]:
        """
        Handle one incoming message.

        Args:
            raw: The message as received from the transport

        Returns:
            The response envelope, or None for notifications
        """
        try:
            message = self.parse(raw)
        except ToolError as e:
            logger.warning(f"Rejected message: {e.message}")
            self._transition(None, CallState.ERROR_RESPONDING)
            return ResponseEnvelope(id=None, error=e.to_error())

        if message.is_notification:
            await self._notify(message)
            return None

        request_id = message.id
        if request_id is None:
            return ResponseEnvelope(
                id=None, error=make_error(ErrorKind.INVALID_REQUEST, "Request id must be a string or an integer")
            )
        if request_id in self._open_ids:
            logger.warning(f"Duplicate request id {request_id!r} rejected while the first is open")
            return ResponseEnvelope(
                id=None,
                error=make_error(
                    ErrorKind.INVALID_REQUEST, f"Request id {request_id!r} is already in use", request_id=request_id
                ),
            )

        self._open_ids.add(request_id)
        self._transition(request_id, CallState.RECEIVED)
        try:
            return await self._respond(message)
        finally:
            self._open_ids.discard(request_id)
            self._transition(request_id, CallState.CLOSED)

    async def _respond(self, message: JSONRPCMessage) -> ResponseEnvelope:
        handler = self._methods.get(message.method)
        try:
            if handler is None:
                raise MethodNotFoundError(f"Method not found: {message.method}", method=message.method)
            result = await handler(message)
        except ToolError as e:
            result = e.to_error()
        except Exception as e:
            logger.error(f"Unexpected failure handling {message.method} (request {message.id!r}): {e!r}", exc_info=e)
            result = map_failure(e)

        if isinstance(result, ErrorObject):
            self._transition(message.id, CallState.ERROR_RESPONDING)
            return ResponseEnvelope(id=message.id, error=result)

        self._transition(message.id, CallState.RESPONDING)
        return ResponseEnvelope(id=message.id, result=result)

    async def _notify(self, message: JSONRPCMessage) -> None:
        handler = self._notifications.get(message.method)
        if handler is None:
            logger.debug(f"Ignoring notification {message.method}")
            return
        try:
            await handler(message)
        except ToolError as e:
            logger.warning(f"Ignoring malformed {message.method}: {e.message}")
        except Exception as e:
            logger.error(f"Failed to handle notification {message.method}: {e!r}", exc_info=e)

    @staticmethod
    def _params(model: Type[P], message: JSONRPCMessage) -> P:
        try:
            return model.model_validate(message.params or {})
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(map(str, first["loc"])) or None
            raise InvalidParamsError(field, first["msg"]) from e

    async def call_tool(self, request: RequestEnvelope) -> Union[Dict[str, Any], ErrorObject]:
        """
        Look up, validate and execute one tool call.

        Args:
            request: The tool call envelope

        Returns:
            The formatted call result, or the error describing why it failed
        """
        self._transition(request.id, CallState.VALIDATING)
        try:
            tool = self.registry.get_tool(request.tool)
        except ToolNotFoundError:
            logger.warning(f"Tool not found: {request.tool}")
            self._transition(request.id, CallState.REJECTED)
            return make_error(ErrorKind.METHOD_NOT_FOUND, f"Unknown tool: {request.tool}", tool=request.tool)

        try:
            arguments = self.validator.validate(tool, request.arguments)
        except InvalidParamsError as e:
            self._transition(request.id, CallState.REJECTED)
            return e.to_error()

        self._transition(request.id, CallState.DISPATCHING)
        try:
            self._transition(request.id, CallState.EXECUTING)
            outcome = await self.supervisor.run(
                request.id,
                tool.name,
                lambda: tool.execute(arguments),
                timeout_class=tool.timeout_class,
                parameters=arguments,
            )
        except DuplicateRequestError as e:
            return make_error(ErrorKind.INVALID_REQUEST, str(e))

        if outcome.success:
            self._transition(request.id, CallState.SUCCEEDED)
            return self.formatter.format_result(outcome)

        self._transition(request.id, CallState.CANCELLED if outcome.cancelled else CallState.FAILED)
        return outcome.error

    async def shutdown(self, reason: str = "connection closed") -> None:
        """Cancel every in-flight call and refuse later ones; each still gets a Cancelled response."""
        cancelled = await self.supervisor.close(reason)
        if cancelled:
            logger.info(f"Cancelled {cancelled} in-flight request(s): {reason}")

    async def _initialize(self, message: JSONRPCMessage) -> Dict[str, Any]:
        params = self._params(InitializeParams, message)
        client = params.client_info
        logger.info(f"Initialize from client {client.name} {client.version}".rstrip())
        result = InitializeResult(server_info=self.server_info, instructions=self.instructions)
        return result.to_wire()

    async def _ping(self, message: JSONRPCMessage) -> Dict[str, Any]:
        return {}

    async def _list_tools(self, message: JSONRPCMessage) -> Dict[str, Any]:
        return {"tools": self.registry.get_schemas()}

    async def _call_tool(self, message: JSONRPCMessage) -> Union[Dict[str, Any], ErrorObject]:
        params = self._params(ToolCallParams, message)
        request = RequestEnvelope(id=message.id, tool=params.name, arguments=params.arguments or {})
        return await self.call_tool(request)

    async def _list_resources(self, message: JSONRPCMessage) -> Dict[str, Any]:
        return {"resources": resources_to_wire(self.resources.list())}

    async def _read_resource(self, message: JSONRPCMessage) -> Union[Dict[str, Any], ErrorObject]:
        params = self._params(ResourceReadParams, message)
        uri, provider = self.resources.resolve(params.uri)
        outcome = await self.supervisor.run(
            message.id, "resources/read", lambda: provider.read(uri), timeout_class=LOOKUP, parameters={"uri": str(uri)}
        )
        if not outcome.success:
            return outcome.error
        return {"contents": resources_to_wire([outcome.result])}

    async def _list_prompts(self, message: JSONRPCMessage) -> Dict[str, Any]:
        return {"prompts": []}

    async def _set_level(self, message: JSONRPCMessage) -> Dict[str, Any]:
        params = self._params(SetLevelParams, message)
        logging.getLogger("toolhost").setLevel(LOG_LEVELS[params.level])
        logger.info(f"Log level set to {params.level}")
        return {}

    async def _on_initialized(self, message: JSONRPCMessage) -> None:
        self.initialized = True
        logger.debug("Client finished initialization")

    async def _on_cancelled(self, message: JSONRPCMessage) -> None:
        params = self._params(CancelledParams, message)
        await self.supervisor.cancel(params.request_id, params.reason or "cancelled by client")
