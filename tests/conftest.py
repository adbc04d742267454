"""
Shared pytest fixtures for the conversation handler tests.

AppSync is faked with an ``httpx.MockTransport`` that records every GraphQL
request; Bedrock is a ``MagicMock`` client returning canned stream events.
"""

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "conversation-handler")
os.environ.pop("GUARDRAIL_ID", None)

import httpx
import pytest
from conversation_lambda.graphql import GraphqlRequestExecutor, UserAgentProvider
from conversation_lambda.models import TurnEvent

LIST_QUERY_NAME = "listConversationMessageChats"
GET_QUERY_NAME = "getConversationMessageChat"
MUTATION_NAME = "createAssistantResponseStreamChat"


# ===== APPSYNC FAKE =====


class FakeAppSync:
    """Callable handler for ``httpx.MockTransport`` imitating the store."""

    def __init__(
        self,
        messages: Optional[List[Dict[str, Any]]] = None,
        current_message: Optional[Dict[str, Any]] = None,
        fail_mutations: bool = False,
    ):
        self.messages = messages or []
        self.current_message = current_message
        self.fail_mutations = fail_mutations
        self.requests: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(
            {
                "headers": request.headers,
                "query": body["query"],
                "variables": body["variables"],
            }
        )
        query: str = body["query"]
        if query.startswith("query ListMessages"):
            return httpx.Response(
                200, json={"data": {LIST_QUERY_NAME: {"items": self.messages}}}
            )
        if query.startswith("query GetMessage"):
            return httpx.Response(
                200, json={"data": {GET_QUERY_NAME: self.current_message}}
            )
        if self.fail_mutations:
            return httpx.Response(500, text="Internal failure")
        return httpx.Response(200, json={"data": {MUTATION_NAME: {"id": "r-1"}}})

    def _by_prefix(self, prefix: str) -> List[Dict[str, Any]]:
        return [r for r in self.requests if r["query"].startswith(prefix)]

    @property
    def list_requests(self) -> List[Dict[str, Any]]:
        return self._by_prefix("query ListMessages")

    @property
    def get_requests(self) -> List[Dict[str, Any]]:
        return self._by_prefix("query GetMessage")

    @property
    def mutations(self) -> List[Dict[str, Any]]:
        return self._by_prefix("mutation")

    @property
    def published_inputs(self) -> List[Dict[str, Any]]:
        return [r["variables"]["input"] for r in self.mutations]


# ===== TEST DATA FIXTURES =====


@pytest.fixture
def user_message() -> Dict[str, Any]:
    """The stored message that triggered the turn."""
    return {
        "id": "msg-2",
        "role": "user",
        "content": [
            {
                "text": "Which phone has the most storage?",
                "image": None,
                "document": None,
                "toolUse": None,
                "toolResult": None,
            }
        ],
        "conversationId": "conv-1",
        "associatedUserMessageId": None,
        "aiContext": None,
        "createdAt": "2025-01-01T10:00:02Z",
    }


@pytest.fixture
def history_messages() -> List[Dict[str, Any]]:
    return [
        {
            "id": "msg-0",
            "role": "user",
            "content": [{"text": "Hi there", "image": None}],
            "conversationId": "conv-1",
            "aiContext": None,
            "createdAt": "2025-01-01T10:00:00Z",
        },
        {
            "id": "msg-1",
            "role": "assistant",
            "content": [{"text": "Hello! How can I help?", "image": None}],
            "conversationId": "conv-1",
            "associatedUserMessageId": "msg-0",
            "aiContext": None,
            "createdAt": "2025-01-01T10:00:01Z",
        },
    ]


@pytest.fixture
def turn_event_dict() -> Dict[str, Any]:
    """An AppSync conversation turn event as delivered to the handler."""
    return {
        "typeName": "Mutation",
        "fieldName": "chat",
        "conversationId": "conv-1",
        "currentMessageId": "msg-2",
        "streamResponse": True,
        "modelConfiguration": {
            "modelId": "anthropic.claude-3-haiku-20240307-v1:0",
            "systemPrompt": "You are a product assistant for TechMart.",
        },
        "responseMutation": {
            "name": MUTATION_NAME,
            "inputTypeName": "CreateConversationMessageChatAssistantStreamingInput",
            "selectionSet": "id conversationId associatedUserMessageId",
        },
        "messageHistoryQuery": {
            "getQueryName": GET_QUERY_NAME,
            "getQueryInputTypeName": "ID",
            "listQueryName": LIST_QUERY_NAME,
            "listQueryInputTypeName": "ModelConversationMessageChatFilterInput",
            "listQueryLimit": None,
        },
        "graphqlApiEndpoint": "https://example.appsync-api.eu-central-1.amazonaws.com/graphql",
        "request": {
            "headers": {
                "authorization": "Bearer user-token",
                "x-amz-user-agent": "aws-amplify/6.0.0",
            }
        },
    }


@pytest.fixture
def turn_event(turn_event_dict) -> TurnEvent:
    return TurnEvent.model_validate(turn_event_dict)


@pytest.fixture
def fake_appsync(history_messages, user_message) -> FakeAppSync:
    """Store whose listing already contains the triggering message."""
    return FakeAppSync(messages=history_messages + [user_message])


@pytest.fixture
def appsync_factory():
    return FakeAppSync


@pytest.fixture
def executor_factory(turn_event):
    """Build an executor for the turn event routed to a fake handler."""

    def make(handler) -> GraphqlRequestExecutor:
        return GraphqlRequestExecutor(
            turn_event.graphql_api_endpoint,
            turn_event.request.headers.authorization,
            UserAgentProvider(turn_event.request.headers),
            transport=httpx.MockTransport(handler),
        )

    return make


@pytest.fixture
def graphql_executor(executor_factory, fake_appsync) -> GraphqlRequestExecutor:
    return executor_factory(fake_appsync)


# ===== BEDROCK FIXTURES =====


@pytest.fixture
def bedrock_client() -> MagicMock:
    client = MagicMock()
    client.meta.region_name = "eu-central-1"
    return client


# ===== LAMBDA FIXTURES =====


@dataclass
class FakeLambdaContext:
    function_name: str = "customChatHandler"
    memory_limit_in_mb: int = 512
    invoked_function_arn: str = (
        "arn:aws:lambda:eu-central-1:123456789012:function:customChatHandler"
    )
    aws_request_id: str = "52fdfc07-2182-154f-163f-5f0f9a621d72"


@pytest.fixture
def lambda_context() -> FakeLambdaContext:
    return FakeLambdaContext()
