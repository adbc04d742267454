import base64
import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    field_validator,
)
from pydantic.alias_generators import to_camel

Role = Literal["user", "assistant"]

DEFAULT_LIST_QUERY_LIMIT: int = 1000


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EventModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
        protected_namespaces=(),
    )


# --- Inbound turn event ---


class ModelConfiguration(EventModel):
    model_id: str
    system_prompt: str


class ResponseMutation(EventModel):
    name: str
    input_type_name: str
    selection_set: str


class MessageHistoryQuery(EventModel):
    get_query_name: str
    get_query_input_type_name: str
    list_query_name: str
    list_query_input_type_name: str
    list_query_limit: int = DEFAULT_LIST_QUERY_LIMIT

    @field_validator("list_query_limit", mode="before")
    @classmethod
    def default_limit(cls, value: Any) -> Any:
        return DEFAULT_LIST_QUERY_LIMIT if value is None else value


class RequestHeaders(EventModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    authorization: str
    user_agent: Optional[str] = Field(default=None, alias="x-amz-user-agent")


class RequestContext(EventModel):
    headers: RequestHeaders


class TurnEvent(EventModel):
    conversation_id: str
    current_message_id: str
    model_configuration: ModelConfiguration
    stream_response: bool = False
    response_mutation: ResponseMutation
    message_history_query: MessageHistoryQuery
    graphql_api_endpoint: str
    request: RequestContext


# --- Content blocks ---


class BinarySource(WireModel):
    """Binary payload, base64 text in the store and raw bytes afterwards."""

    data: bytes = Field(alias="bytes")

    @field_validator("data", mode="before")
    @classmethod
    def decode_base64(cls, value: Any) -> Any:
        if isinstance(value, str):
            return base64.b64decode(value)
        return value


class ImageContent(WireModel):
    format: str
    source: BinarySource


class DocumentContent(WireModel):
    format: str
    name: str
    source: BinarySource


class ToolUseContent(WireModel):
    tool_use_id: str
    name: str
    input: Any = None

    @field_validator("input", mode="before")
    @classmethod
    def parse_json_string(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value


class ToolResultContentBlock(WireModel):
    text: Optional[str] = None
    json_value: Any = Field(default=None, alias="json")

    @field_validator("json_value", mode="before")
    @classmethod
    def parse_json_string(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value

    def to_wire(self) -> Dict[str, Any]:
        if self.text is not None:
            return {"text": self.text}
        return {"json": self.json_value}


class ToolResultContent(WireModel):
    tool_use_id: str
    status: Optional[str] = None
    content: List[ToolResultContentBlock] = Field(default_factory=list)


class TextBlock(WireModel):
    text: str

    def to_wire(self) -> Dict[str, Any]:
        return {"text": self.text}


class ImageBlock(WireModel):
    image: ImageContent

    def to_wire(self) -> Dict[str, Any]:
        return {
            "image": {
                "format": self.image.format,
                "source": {"bytes": self.image.source.data},
            }
        }


class DocumentBlock(WireModel):
    document: DocumentContent

    def to_wire(self) -> Dict[str, Any]:
        return {
            "document": {
                "format": self.document.format,
                "name": self.document.name,
                "source": {"bytes": self.document.source.data},
            }
        }


class ToolUseBlock(WireModel):
    tool_use: ToolUseContent

    def to_wire(self) -> Dict[str, Any]:
        return {
            "toolUse": {
                "toolUseId": self.tool_use.tool_use_id,
                "name": self.tool_use.name,
                "input": self.tool_use.input,
            }
        }


class ToolResultBlock(WireModel):
    tool_result: ToolResultContent

    def to_wire(self) -> Dict[str, Any]:
        tool_result: Dict[str, Any] = {
            "toolUseId": self.tool_result.tool_use_id,
            "content": [block.to_wire() for block in self.tool_result.content],
        }
        if self.tool_result.status is not None:
            tool_result["status"] = self.tool_result.status
        return {"toolResult": tool_result}


# Wire key -> attribute name on the block model.
CONTENT_BLOCK_KINDS: Dict[str, str] = {
    "text": "text",
    "image": "image",
    "document": "document",
    "toolUse": "tool_use",
    "toolResult": "tool_result",
}


def content_block_kind(value: Any) -> Optional[str]:
    for kind, attribute in CONTENT_BLOCK_KINDS.items():
        if isinstance(value, dict):
            present = value.get(kind, value.get(attribute))
        else:
            present = getattr(value, attribute, None)
        if present is not None:
            return kind
    return None


ContentBlock = Annotated[
    Union[
        Annotated[TextBlock, Tag("text")],
        Annotated[ImageBlock, Tag("image")],
        Annotated[DocumentBlock, Tag("document")],
        Annotated[ToolUseBlock, Tag("toolUse")],
        Annotated[ToolResultBlock, Tag("toolResult")],
    ],
    Discriminator(content_block_kind),
]


def drop_nulls(block: Any) -> Any:
    if isinstance(block, dict):
        return {key: value for key, value in block.items() if value is not None}
    return block


# --- Messages ---


class StoredMessage(WireModel):
    id: str
    role: Role
    content: List[ContentBlock] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    associated_user_message_id: Optional[str] = None
    ai_context: Any = None
    created_at: Optional[str] = None

    @field_validator("content", mode="before")
    @classmethod
    def normalize_content(cls, value: Any) -> Any:
        if value is None:
            return []
        return [drop_nulls(block) for block in value]


class ConverseMessage(WireModel):
    role: Role
    content: List[ContentBlock]

    def to_bedrock(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": [block.to_wire() for block in self.content],
        }


# --- Mutation payloads published to the store ---


class TurnNotification(WireModel):
    conversation_id: str
    associated_user_message_id: str
    content_block_index: int = 0
    accumulated_turn_content: List[TextBlock]

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class StreamingChunk(TurnNotification):
    content_block_text: str
    content_block_delta_index: int


class BlockComplete(TurnNotification):
    content_block_done_at_index: int


class TurnComplete(TurnNotification):
    stop_reason: str


class SingleResponse(WireModel):
    conversation_id: str
    content: List[ContentBlock]
    associated_user_message_id: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "content": [block.to_wire() for block in self.content],
            "associatedUserMessageId": self.associated_user_message_id,
        }


# --- Bedrock ConverseStream events ---


class TextDelta(BaseModel):
    text: str
    content_block_index: int = 0


class BlockStop(BaseModel):
    content_block_index: int = 0


class MessageStop(BaseModel):
    stop_reason: Optional[str] = None


class StreamMetadata(BaseModel):
    usage: Optional[Dict[str, Any]] = None
    trace: Optional[Dict[str, Any]] = None


StreamEvent = Union[TextDelta, BlockStop, MessageStop, StreamMetadata]


def parse_stream_event(chunk: Dict[str, Any]) -> Optional[StreamEvent]:
    """Map one raw ``converse_stream`` event onto a typed stream event.

    Events the relay does not act on (messageStart, contentBlockStart,
    tool-use or reasoning deltas) map to ``None``.
    """
    delta: Dict[str, Any] = chunk.get("contentBlockDelta") or {}
    if (delta.get("delta") or {}).get("text"):
        return TextDelta(
            text=delta["delta"]["text"],
            content_block_index=delta.get("contentBlockIndex", 0),
        )
    if "contentBlockStop" in chunk:
        return BlockStop(
            content_block_index=chunk["contentBlockStop"].get(
                "contentBlockIndex", 0
            )
        )
    if "messageStop" in chunk:
        return MessageStop(stop_reason=chunk["messageStop"].get("stopReason"))
    if "metadata" in chunk:
        metadata: Dict[str, Any] = chunk["metadata"] or {}
        return StreamMetadata(
            usage=metadata.get("usage"), trace=metadata.get("trace")
        )
    return None
