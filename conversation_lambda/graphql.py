import json
import re
from typing import Any, Dict, List, Literal, Optional

import httpx
from aws_lambda_powertools import Logger
from pydantic import BaseModel, Field, field_validator

from conversation_lambda.models import RequestHeaders

logger: Logger = Logger(child=True)

USER_AGENT_PRODUCT: str = "amplify-ai-constructs"
USER_AGENT_VERSION: str = "1.5.3"

GRAPHQL_NAME = re.compile(r"^[_A-Za-z][_0-9A-Za-z]*$")
GRAPHQL_TYPE = re.compile(r"^[_A-Za-z][_0-9A-Za-z]*!?$")


class GraphqlRequestError(Exception):
    """Communication with the AppSync GraphQL API failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        errors: Optional[List[Any]] = None,
    ):
        self.status_code = status_code
        self.errors = errors or []
        super().__init__(message)


class GraphqlRequest(BaseModel):
    query: str
    variables: Dict[str, Any] = Field(default_factory=dict)


class GraphqlOperation(BaseModel):
    """A query or mutation whose names come from the caller at runtime.

    Every name is checked against the GraphQL name grammar when the
    operation is constructed, so a malformed descriptor fails before any
    request is sent. Each declared variable is passed to the root field as
    an argument of the same name.
    """

    kind: Literal["query", "mutation"]
    operation_name: str
    field_name: str
    variables: Dict[str, str]
    selection_set: str

    @field_validator("operation_name", "field_name")
    @classmethod
    def check_name(cls, value: str) -> str:
        if not GRAPHQL_NAME.match(value):
            raise ValueError(f"Invalid GraphQL name: {value!r}")
        return value

    @field_validator("variables")
    @classmethod
    def check_variables(cls, value: Dict[str, str]) -> Dict[str, str]:
        for name, type_name in value.items():
            if not GRAPHQL_NAME.match(name):
                raise ValueError(f"Invalid GraphQL variable name: {name!r}")
            if not GRAPHQL_TYPE.match(type_name):
                raise ValueError(f"Invalid GraphQL type name: {type_name!r}")
        return value

    @field_validator("selection_set")
    @classmethod
    def check_selection_set(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Selection set must not be empty")
        depth: int = 0
        for char in value:
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
            if depth < 0:
                break
        if depth != 0:
            raise ValueError("Selection set has unbalanced braces")
        return value.strip()

    def render(self) -> str:
        definitions: str = ", ".join(
            f"${name}: {type_name}" for name, type_name in self.variables.items()
        )
        arguments: str = ", ".join(f"{name}: ${name}" for name in self.variables)
        return (
            f"{self.kind} {self.operation_name}({definitions}) {{\n"
            f"  {self.field_name}({arguments}) {{\n"
            f"    {self.selection_set}\n"
            f"  }}\n"
            f"}}\n"
        )

    def build(self, variables: Dict[str, Any]) -> GraphqlRequest:
        unknown = set(variables) - set(self.variables)
        if unknown:
            raise ValueError(
                f"Undeclared variables for {self.operation_name}: {sorted(unknown)}"
            )
        missing: List[str] = [
            name
            for name, type_name in self.variables.items()
            if type_name.endswith("!") and variables.get(name) is None
        ]
        if missing:
            raise ValueError(
                f"Missing required variables for {self.operation_name}: {missing}"
            )
        return GraphqlRequest(query=self.render(), variables=variables)


class UserAgentProvider:
    def __init__(self, headers: RequestHeaders):
        self.inbound_user_agent: Optional[str] = headers.user_agent

    def get_user_agent(
        self, additional_metadata: Optional[Dict[str, str]] = None
    ) -> str:
        if self.inbound_user_agent:
            user_agent: str = (
                f"{self.inbound_user_agent} "
                f"md/{USER_AGENT_PRODUCT}#{USER_AGENT_VERSION}"
            )
        else:
            user_agent = f"{USER_AGENT_PRODUCT}/{USER_AGENT_VERSION}"
        for key, value in (additional_metadata or {}).items():
            user_agent += f" {key}/{value}"
        return user_agent


class GraphqlRequestExecutor:
    def __init__(
        self,
        graphql_endpoint: str,
        access_token: str,
        user_agent_provider: UserAgentProvider,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.graphql_endpoint: str = graphql_endpoint
        self.access_token: str = access_token
        self.user_agent_provider: UserAgentProvider = user_agent_provider
        self.timeout: Optional[float] = timeout
        # One pooled client per invocation; every publish reuses its connection.
        self.client: httpx.Client = httpx.Client(
            timeout=timeout, transport=transport
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "GraphqlRequestExecutor":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def execute_graphql(
        self, request: GraphqlRequest, user_agent: Optional[str] = None
    ) -> Dict[str, Any]:
        headers: Dict[str, str] = {
            "Content-Type": "application/graphql",
            "Authorization": self.access_token,
            "x-amz-user-agent": user_agent
            or self.user_agent_provider.get_user_agent(),
        }
        logger.debug(
            f"Executing GraphQL request against {self.graphql_endpoint}",
            extra={"user_agent": headers["x-amz-user-agent"]},
        )
        try:
            response: httpx.Response = self.client.post(
                self.graphql_endpoint,
                content=request.model_dump_json(),
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise GraphqlRequestError(f"GraphQL request failed: {e}") from e

        if not response.is_success:
            raise GraphqlRequestError(
                f"GraphQL request failed: {response.text}",
                status_code=response.status_code,
            )

        body: Dict[str, Any] = response.json()
        if body.get("errors"):
            raise GraphqlRequestError(
                f"GraphQL errors: {json.dumps(body['errors'])}",
                status_code=response.status_code,
                errors=body["errors"],
            )
        return body
