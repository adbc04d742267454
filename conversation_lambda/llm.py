import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Iterator, List, Optional

from aws_lambda_powertools import Logger
from botocore.client import BaseClient
from pydantic import BaseModel

from conversation_lambda.models import (
    ContentBlock,
    ConverseMessage,
    ModelConfiguration,
    StoredMessage,
    StreamEvent,
    TextBlock,
    parse_stream_event,
)

logger: Logger = Logger(child=True)

DEFAULT_GUARDRAIL_VERSION: str = "DRAFT"


class GuardrailSettings(BaseModel):
    identifier: str
    version: str = DEFAULT_GUARDRAIL_VERSION

    def to_bedrock(self) -> Dict[str, str]:
        return {
            "guardrailIdentifier": self.identifier,
            "guardrailVersion": self.version,
            "streamProcessingMode": "async",
            "trace": "enabled",
        }


class LLMProviderStrategy(ABC):
    def __init__(
        self, client: BaseClient, guardrail: Optional[GuardrailSettings] = None
    ):
        self.client = client
        self.guardrail = guardrail
        self.region_name = self.client.meta.region_name

    @abstractmethod
    def converse_stream(
        self, model: ModelConfiguration, messages: List[ConverseMessage]
    ) -> Optional[Iterator[StreamEvent]]:
        raise NotImplementedError


class BedrockConverseStreamStrategy(LLMProviderStrategy):
    def build_request(
        self, model: ModelConfiguration, messages: List[ConverseMessage]
    ) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "modelId": model.model_id,
            "messages": [message.to_bedrock() for message in messages],
            "system": [{"text": model.system_prompt}],
        }
        if self.guardrail is not None:
            request["guardrailConfig"] = self.guardrail.to_bedrock()
        return request

    def converse_stream(
        self, model: ModelConfiguration, messages: List[ConverseMessage]
    ) -> Optional[Iterator[StreamEvent]]:
        logger.info(
            f"Bedrock Strategy: Invoking model {model.model_id}",
            extra={
                "region": self.region_name,
                "guardrail_enabled": self.guardrail is not None,
            },
        )
        try:
            response: Dict[str, Any] = self.client.converse_stream(
                **self.build_request(model, messages)
            )
        except Exception:
            logger.exception("Error invoking Bedrock ConverseStream")
            raise

        stream: Optional[Iterable[Dict[str, Any]]] = response.get("stream")
        if stream is None:
            return None
        return self._iter_events(stream)

    @staticmethod
    def _iter_events(stream: Iterable[Dict[str, Any]]) -> Iterator[StreamEvent]:
        for chunk in stream:
            event: Optional[StreamEvent] = parse_stream_event(chunk)
            if event is not None:
                yield event


class LLMProviderFactory:
    def __init__(
        self, client: BaseClient, guardrail: Optional[GuardrailSettings] = None
    ):
        self.client: BaseClient = client
        self.guardrail: Optional[GuardrailSettings] = guardrail
        self.strategies: Dict[str, type[LLMProviderStrategy]] = {
            "BedrockConverseStreamStrategy": BedrockConverseStreamStrategy,
        }

    def get_strategy(self, strategy_name: str) -> LLMProviderStrategy:
        strategy_class = self.strategies.get(strategy_name)
        if not strategy_class:
            raise ValueError(f"Unknown LLM strategy: {strategy_name}")

        return strategy_class(self.client, self.guardrail)


class LLMProvider:
    def __init__(self, strategy: LLMProviderStrategy):
        self.strategy: LLMProviderStrategy = strategy

    @staticmethod
    def build_bedrock_messages(
        conversation_history: List[StoredMessage],
    ) -> List[ConverseMessage]:
        messages: List[ConverseMessage] = []
        for msg in conversation_history:
            content: List[ContentBlock] = list(msg.content)
            if msg.ai_context not in (None, ""):
                content.append(TextBlock(text=json.dumps(msg.ai_context)))

            messages.append(ConverseMessage(role=msg.role, content=content))
        return messages

    def converse_stream(
        self, model: ModelConfiguration, messages: List[ConverseMessage]
    ) -> Optional[Iterator[StreamEvent]]:
        return self.strategy.converse_stream(model, messages)
