from typing import Any, Dict, List, Optional

from aws_lambda_powertools import Logger

from conversation_lambda.graphql import (
    GraphqlOperation,
    GraphqlRequestError,
    GraphqlRequestExecutor,
    UserAgentProvider,
)
from conversation_lambda.models import (
    ContentBlock,
    SingleResponse,
    StoredMessage,
    TurnEvent,
    TurnNotification,
)

logger: Logger = Logger(child=True)

MESSAGE_SELECTION_SET: str = """
    id
    role
    content {
      text
      image {
        format
        source {
          bytes
        }
      }
      document {
        format
        name
        source {
          bytes
        }
      }
      toolUse {
        toolUseId
        name
        input
      }
      toolResult {
        toolUseId
        status
        content {
          text
          json
        }
      }
    }
    conversationId
    associatedUserMessageId
    aiContext
    createdAt
"""


class MessageHistoryRepository:
    def __init__(
        self, event: TurnEvent, graphql_executor: GraphqlRequestExecutor
    ):
        self.event: TurnEvent = event
        self.graphql_executor: GraphqlRequestExecutor = graphql_executor
        history_query = event.message_history_query
        self.get_operation: GraphqlOperation = GraphqlOperation(
            kind="query",
            operation_name="GetMessage",
            field_name=history_query.get_query_name,
            variables={"id": f"{history_query.get_query_input_type_name}!"},
            selection_set=MESSAGE_SELECTION_SET,
        )
        self.list_operation: GraphqlOperation = GraphqlOperation(
            kind="query",
            operation_name="ListMessages",
            field_name=history_query.list_query_name,
            variables={
                "filter": f"{history_query.list_query_input_type_name}!",
                "limit": "Int",
            },
            selection_set=f"items {{{MESSAGE_SELECTION_SET}}}",
        )

    def get_message_history(self) -> List[StoredMessage]:
        messages: List[StoredMessage] = self.list_messages()
        current_message_id: str = self.event.current_message_id
        if not any(message.id == current_message_id for message in messages):
            # List index may not reflect a just-written message yet.
            logger.info(
                f"Current message {current_message_id} missing from listing, "
                "fetching it directly"
            )
            messages.append(self.get_current_message())
        return messages

    def get_current_message(self) -> StoredMessage:
        query_name: str = self.event.message_history_query.get_query_name
        response: Dict[str, Any] = self.graphql_executor.execute_graphql(
            self.get_operation.build({"id": self.event.current_message_id})
        )
        item: Optional[Dict[str, Any]] = response["data"][query_name]
        if item is None:
            raise GraphqlRequestError(
                f"Message {self.event.current_message_id} not found"
            )
        return StoredMessage.model_validate(item)

    def list_messages(self) -> List[StoredMessage]:
        history_query = self.event.message_history_query
        response: Dict[str, Any] = self.graphql_executor.execute_graphql(
            self.list_operation.build(
                {
                    "filter": {
                        "conversationId": {"eq": self.event.conversation_id}
                    },
                    "limit": history_query.list_query_limit,
                }
            )
        )
        items: List[Dict[str, Any]] = response["data"][
            history_query.list_query_name
        ]["items"]
        return [StoredMessage.model_validate(item) for item in items]


class ResponseSender:
    def __init__(
        self,
        event: TurnEvent,
        graphql_executor: GraphqlRequestExecutor,
        user_agent_provider: UserAgentProvider,
    ):
        self.event: TurnEvent = event
        self.graphql_executor: GraphqlRequestExecutor = graphql_executor
        self.user_agent_provider: UserAgentProvider = user_agent_provider
        self.mutation: GraphqlOperation = GraphqlOperation(
            kind="mutation",
            operation_name="PublishModelResponse",
            field_name=event.response_mutation.name,
            variables={"input": f"{event.response_mutation.input_type_name}!"},
            selection_set=event.response_mutation.selection_set,
        )

    def send_response_chunk(self, chunk: TurnNotification) -> None:
        self.graphql_executor.execute_graphql(
            self.mutation.build({"input": chunk.to_wire()}),
            user_agent=self.user_agent_provider.get_user_agent(
                {"turn-response-type": "streaming"}
            ),
        )

    def send_response(self, content: List[ContentBlock]) -> None:
        message: SingleResponse = SingleResponse(
            conversation_id=self.event.conversation_id,
            content=content,
            associated_user_message_id=self.event.current_message_id,
        )
        self.graphql_executor.execute_graphql(
            self.mutation.build({"input": message.to_wire()}),
            user_agent=self.user_agent_provider.get_user_agent(
                {"turn-response-type": "single"}
            ),
        )
