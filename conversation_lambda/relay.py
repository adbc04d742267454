from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from aws_lambda_powertools import Logger
from pydantic import BaseModel

from conversation_lambda.llm import LLMProvider
from conversation_lambda.models import (
    BlockComplete,
    BlockStop,
    ConverseMessage,
    MessageStop,
    StoredMessage,
    StreamEvent,
    StreamingChunk,
    StreamMetadata,
    TextBlock,
    TextDelta,
    TurnComplete,
    TurnEvent,
)
from conversation_lambda.repositories import (
    MessageHistoryRepository,
    ResponseSender,
)

logger: Logger = Logger(child=True)

NO_RESPONSE_TEXT: str = "No response generated"
DEFAULT_STOP_REASON: str = "end_turn"
GUARDRAIL_INTERVENED: str = "guardrail_intervened"
# Substituted by the guardrail for blocked input; it arrives as model output.
GUARDRAIL_BLOCKED_PHRASE: str = "blocked by our content policy"


class StreamState(str, Enum):
    STREAMING = "streaming"
    BLOCK_CLOSING = "block_closing"
    DONE = "done"


class TurnAccumulator:
    """In-memory state of one streamed turn.

    ``text`` is always the concatenation of every delta appended so far and
    fragment indices are handed out as 0, 1, 2, ... in arrival order.
    """

    def __init__(self) -> None:
        self.state: StreamState = StreamState.STREAMING
        self.text: str = ""
        self.next_fragment_index: int = 0
        self.stop_reason: str = ""
        self.guardrail_trace: Optional[Dict[str, Any]] = None

    def append(self, delta: str) -> int:
        fragment_index: int = self.next_fragment_index
        self.text += delta
        self.next_fragment_index += 1
        return fragment_index

    @property
    def last_fragment_index(self) -> int:
        return max(0, self.next_fragment_index - 1)

    @property
    def guardrail_blocked(self) -> bool:
        return GUARDRAIL_BLOCKED_PHRASE in self.text

    def content(self) -> List[TextBlock]:
        return [TextBlock(text=self.text)]


class TurnResult(BaseModel):
    stop_reason: str
    content: str
    fragments: int = 0
    streamed: bool = True


class TurnRelay:
    def __init__(
        self,
        event: TurnEvent,
        history_repository: MessageHistoryRepository,
        llm_provider: LLMProvider,
        response_sender: ResponseSender,
    ):
        self.event: TurnEvent = event
        self.history_repository: MessageHistoryRepository = history_repository
        self.llm_provider: LLMProvider = llm_provider
        self.response_sender: ResponseSender = response_sender

    def run(self) -> TurnResult:
        if not self.event.stream_response:
            # TODO: fetch history and invoke the model through Converse for
            # single-shot callers instead of publishing the placeholder. The
            # history fetch is skipped here, so store read failures on this
            # path never reach the apology.
            return self.send_placeholder()

        history: List[StoredMessage] = (
            self.history_repository.get_message_history()
        )
        logger.info(f"Fetched {len(history)} messages from history")

        messages: List[ConverseMessage] = (
            self.llm_provider.build_bedrock_messages(history)
        )
        stream: Optional[Iterator[StreamEvent]] = (
            self.llm_provider.converse_stream(
                self.event.model_configuration, messages
            )
        )
        if stream is None:
            logger.warning("Bedrock response carried no stream")
            return self.send_placeholder()

        return self.relay_stream(stream)

    def send_placeholder(self) -> TurnResult:
        self.response_sender.send_response([TextBlock(text=NO_RESPONSE_TEXT)])
        return TurnResult(
            stop_reason="", content=NO_RESPONSE_TEXT, streamed=False
        )

    def relay_stream(self, stream: Iterator[StreamEvent]) -> TurnResult:
        turn: TurnAccumulator = TurnAccumulator()

        for event in stream:
            if isinstance(event, StreamMetadata):
                if event.trace:
                    turn.guardrail_trace = event.trace
            elif isinstance(event, TextDelta):
                self.on_text_delta(turn, event)
            elif isinstance(event, BlockStop):
                turn.state = StreamState.BLOCK_CLOSING
                self.on_block_stop(turn)
                turn.state = StreamState.STREAMING
            elif isinstance(event, MessageStop):
                turn.stop_reason = event.stop_reason or DEFAULT_STOP_REASON

        turn.state = StreamState.DONE
        self.on_turn_complete(turn)

        logger.info(
            "Stream finished",
            extra={
                "stop_reason": turn.stop_reason,
                "fragments": turn.next_fragment_index,
            },
        )
        return TurnResult(
            stop_reason=turn.stop_reason,
            content=turn.text,
            fragments=turn.next_fragment_index,
        )

    def on_text_delta(self, turn: TurnAccumulator, event: TextDelta) -> None:
        fragment_index: int = turn.append(event.text)
        self.response_sender.send_response_chunk(
            StreamingChunk(
                conversation_id=self.event.conversation_id,
                associated_user_message_id=self.event.current_message_id,
                content_block_index=0,
                content_block_text=event.text,
                content_block_delta_index=fragment_index,
                accumulated_turn_content=turn.content(),
            )
        )

    def on_block_stop(self, turn: TurnAccumulator) -> None:
        if turn.guardrail_blocked:
            # Guardrail already delivered its own message for this block.
            logger.debug("Skipping block completion for guardrail message")
            return
        self.response_sender.send_response_chunk(
            BlockComplete(
                conversation_id=self.event.conversation_id,
                associated_user_message_id=self.event.current_message_id,
                content_block_index=0,
                content_block_done_at_index=turn.last_fragment_index,
                accumulated_turn_content=turn.content(),
            )
        )

    def on_turn_complete(self, turn: TurnAccumulator) -> None:
        if turn.stop_reason == GUARDRAIL_INTERVENED:
            logger.info(
                "Guardrail intervened",
                extra={
                    "conversation_id": self.event.conversation_id,
                    "message_id": self.event.current_message_id,
                    "stop_reason": turn.stop_reason,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "guardrail_trace": turn.guardrail_trace,
                },
            )

        self.response_sender.send_response_chunk(
            TurnComplete(
                conversation_id=self.event.conversation_id,
                associated_user_message_id=self.event.current_message_id,
                content_block_index=0,
                stop_reason=turn.stop_reason,
                accumulated_turn_content=turn.content(),
            )
        )
