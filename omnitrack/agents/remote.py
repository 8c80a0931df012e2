from __future__ import annotations

from typing import Any

import httpx
from pydantic import ValidationError

from ..core.errors import AgentInputError, InvalidAgentOutputError, TransientAgentError
from ..core.logging import get_logger
from ..schemas.agents import AGENT_RESULT_ADAPTER, AgentKind, AgentResult, ScenarioInput

logger = get_logger(name=__name__)


class HttpAgent:
    """Adapter for an agent served behind an HTTP endpoint.

    The endpoint receives the scenario input as JSON and answers with one
    agent result. Transport failures and 5xx answers are transient, 4xx
    answers mean the input was rejected, and undecodable bodies are invalid
    output.
    """

    def __init__(
        self,
        *,
        agent_id: str,
        kind: AgentKind,
        endpoint: str,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.agent_id = agent_id
        self.kind = AgentKind(kind)
        self._endpoint = endpoint
        self._client = client
        self._headers = dict(headers or {})
        self._timeout = timeout_seconds

    async def analyze(self, scenario_input: ScenarioInput) -> AgentResult:
        payload = {"agent_id": self.agent_id, "kind": self.kind.value, "input": scenario_input.model_dump(mode="json")}
        if self._client is not None:
            response = await self._post(self._client, payload)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await self._post(client, payload)
        return self._decode(response)

    async def _post(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        # httpx.TransportError propagates and is retried by the supervisor
        response = await client.post(self._endpoint, json=payload, headers=self._headers)
        if response.status_code >= 500:
            raise TransientAgentError(f"agent endpoint {self._endpoint} answered {response.status_code}")
        if response.status_code >= 400:
            raise AgentInputError(
                f"agent endpoint {self._endpoint} rejected input with {response.status_code}: {response.text[:200]}"
            )
        return response

    def _decode(self, response: httpx.Response) -> AgentResult:
        try:
            body = response.json()
        except ValueError as exc:
            raise InvalidAgentOutputError(f"agent {self.agent_id} returned a non-JSON body") from exc
        if isinstance(body, dict):
            body.setdefault("agent_id", self.agent_id)
            body.setdefault("kind", self.kind.value)
        try:
            return AGENT_RESULT_ADAPTER.validate_python(body)
        except ValidationError as exc:
            logger.warning("remote_agent_invalid_result", agent_id=self.agent_id, error=str(exc))
            raise InvalidAgentOutputError(f"agent {self.agent_id} returned an invalid result") from exc
