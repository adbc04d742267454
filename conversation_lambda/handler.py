import os
from typing import Any, Dict, Optional

import boto3
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.utilities.typing import LambdaContext
from botocore.client import BaseClient
from pydantic import ValidationError

from conversation_lambda.graphql import GraphqlRequestExecutor, UserAgentProvider
from conversation_lambda.llm import (
    DEFAULT_GUARDRAIL_VERSION,
    GuardrailSettings,
    LLMProvider,
    LLMProviderFactory,
    LLMProviderStrategy,
)
from conversation_lambda.models import TextBlock, TurnEvent
from conversation_lambda.relay import TurnRelay, TurnResult
from conversation_lambda.repositories import (
    MessageHistoryRepository,
    ResponseSender,
)

logger: Logger = Logger()
tracer: Tracer = Tracer()

AWS_REGION: str = os.environ.get("AWS_REGION") or "eu-central-1"
GUARDRAIL_ID: Optional[str] = os.environ.get("GUARDRAIL_ID") or None
GUARDRAIL_VERSION: str = (
    os.environ.get("GUARDRAIL_VERSION") or DEFAULT_GUARDRAIL_VERSION
)
LLM_PROVIDER_STRATEGY: str = os.environ.get(
    "LLM_PROVIDER_STRATEGY", "BedrockConverseStreamStrategy"
)

ERROR_RESPONSE_TEXT: str = "Sorry, there was an error processing your request."

bedrock_client: BaseClient = boto3.client(
    "bedrock-runtime", region_name=AWS_REGION
)

guardrail: Optional[GuardrailSettings] = (
    GuardrailSettings(identifier=GUARDRAIL_ID, version=GUARDRAIL_VERSION)
    if GUARDRAIL_ID
    else None
)

strategy: LLMProviderStrategy = LLMProviderFactory(
    bedrock_client, guardrail
).get_strategy(LLM_PROVIDER_STRATEGY)

llm_provider: LLMProvider = LLMProvider(strategy)


def build_graphql_executor(event: TurnEvent) -> GraphqlRequestExecutor:
    return GraphqlRequestExecutor(
        event.graphql_api_endpoint,
        event.request.headers.authorization,
        UserAgentProvider(event.request.headers),
    )


def build_response_sender(
    event: TurnEvent, graphql_executor: GraphqlRequestExecutor
) -> ResponseSender:
    return ResponseSender(
        event, graphql_executor, graphql_executor.user_agent_provider
    )


def build_relay(event: TurnEvent, response_sender: ResponseSender) -> TurnRelay:
    history_repository: MessageHistoryRepository = MessageHistoryRepository(
        event, response_sender.graphql_executor
    )
    return TurnRelay(event, history_repository, llm_provider, response_sender)


@logger.inject_lambda_context(clear_state=True)
@tracer.capture_lambda_handler
def lambda_handler(event: Dict[str, Any], context: LambdaContext) -> None:
    turn_event: TurnEvent = TurnEvent.model_validate(event)
    logger.append_keys(
        conversation_id=turn_event.conversation_id,
        message_id=turn_event.current_message_id,
    )
    logger.info(
        "Conversation turn received",
        extra={
            "model_id": turn_event.model_configuration.model_id,
            "stream_response": turn_event.stream_response,
        },
    )

    with build_graphql_executor(turn_event) as graphql_executor:
        try:
            response_sender: ResponseSender = build_response_sender(
                turn_event, graphql_executor
            )
        except ValidationError:
            # Without a well-formed mutation there is no way to apologise.
            logger.exception("Invalid response mutation")
            return

        try:
            result: TurnResult = build_relay(turn_event, response_sender).run()
            logger.info(
                "Turn completed",
                extra={
                    "stop_reason": result.stop_reason,
                    "fragments": result.fragments,
                    "streamed": result.streamed,
                },
            )
        except Exception:
            logger.exception("Handler error")
            try:
                response_sender.send_response(
                    [TextBlock(text=ERROR_RESPONSE_TEXT)]
                )
            except Exception:
                logger.warning("Failed to deliver error response")
