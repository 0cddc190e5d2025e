"""
JSON-RPC envelopes exchanged with the client.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, model_validator

from toolhost.mcp.errors import ErrorObject

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"

RequestId = Union[StrictInt, StrictStr]


class JSONRPCMessage(BaseModel):
    """An incoming request or notification."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"]
    id: Optional[RequestId] = None
    method: str = Field(min_length=1)
    params: Optional[Dict[str, Any]] = None

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set


class ToolCallParams(BaseModel):
    """Parameters of a ``tools/call`` request."""

    name: StrictStr
    arguments: Optional[Dict[str, Any]] = None


class CancelledParams(BaseModel):
    """Parameters of a ``notifications/cancelled`` notification."""

    model_config = ConfigDict(populate_by_name=True)

    request_id: RequestId = Field(alias="requestId")
    reason: Optional[str] = None


class ClientInfo(BaseModel):
    name: str = "unknown"
    version: str = ""


class InitializeParams(BaseModel):
    """Parameters of an ``initialize`` request."""

    model_config = ConfigDict(populate_by_name=True)

    protocol_version: Optional[str] = Field(default=None, alias="protocolVersion")
    client_info: ClientInfo = Field(default_factory=ClientInfo, alias="clientInfo")
    capabilities: Dict[str, Any] = Field(default_factory=dict)


class ResourceReadParams(BaseModel):
    uri: StrictStr


class SetLevelParams(BaseModel):
    level: Literal["debug", "info", "notice", "warning", "error", "critical", "alert", "emergency"]


class RequestEnvelope(BaseModel):
    """A parsed tool call: correlation id, tool name and arguments."""

    model_config = ConfigDict(frozen=True)

    id: RequestId
    tool: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ResponseEnvelope(BaseModel):
    """A response correlated to one request; carries a result or an error."""

    id: Optional[RequestId] = None
    result: Optional[Any] = None
    error: Optional[ErrorObject] = None

    @model_validator(mode="after")
    def _exactly_one_outcome(self) -> "ResponseEnvelope":
        if (self.result is None) == (self.error is None):
            raise ValueError("a response carries exactly one of result or error")
        return self

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to a JSON-RPC response object."""
        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            message["error"] = self.error.to_dict()
        else:
            message["result"] = self.result
        return message


class ServerInfo(BaseModel):
    name: str
    version: str


class ServerCapabilities(BaseModel):
    logging: dict = Field(default_factory=dict)
    prompts: Optional[dict] = Field(default_factory=lambda: {"listChanged": False})
    resources: Optional[dict] = Field(default_factory=lambda: {"subscribe": False, "listChanged": False})
    tools: Optional[dict] = Field(default_factory=lambda: {"listChanged": False})


class InitializeResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    protocol_version: str = Field(default=PROTOCOL_VERSION, alias="protocolVersion")
    capabilities: ServerCapabilities = Field(default_factory=ServerCapabilities)
    server_info: ServerInfo = Field(alias="serverInfo")
    instructions: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ResourceInfo(BaseModel):
    """Entry of a ``resources/list`` response."""

    model_config = ConfigDict(populate_by_name=True)

    uri: str
    name: str
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class ResourceContent(BaseModel):
    """Text content of a resource."""

    model_config = ConfigDict(populate_by_name=True)

    uri: str
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    text: str


def resources_to_wire(items: List[BaseModel]) -> List[Dict[str, Any]]:
    return [item.model_dump(by_alias=True, exclude_none=True) for item in items]
