from __future__ import annotations
import logging
from typing import Any
import requests
from erp_sync.infrastructure.circuit_breaker import CircuitBreakerRegistry
from erp_sync.sync.agent_registry import AgentRegistryService

logger = logging.getLogger(__name__)


class AgentError(Exception):
    retryable = False


class AgentNotFoundError(AgentError):
    pass


class AgentOfflineError(AgentError):
    retryable = True


class AgentUnavailableError(AgentError):
    """Transport failure, timeout or 5xx from the agent."""
    retryable = True


class AgentRequestError(AgentError):
    """The agent rejected the request (4xx); resending the same payload will not help."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AgentConfigurationError(AgentError):
    pass


class AgentCommunicationService:
    """Authenticated outbound calls to vendor agents, guarded by per-(vendor, api type) breakers."""

    def __init__(self, registry: AgentRegistryService, breakers: CircuitBreakerRegistry,
                 agent_secret: str | None, http: Any = None, timeout: float = 30.0):
        self._registry = registry
        self._breakers = breakers
        self._agent_secret = agent_secret
        self._http = http or requests.Session()
        self.timeout = timeout

    def call_agent(self, vendor_id: str, api_type: str, endpoint: str, payload: dict,
                   correlation_id: str | None = None) -> Any:
        agent = self._registry.get_agent(vendor_id)
        if agent is None:
            raise AgentNotFoundError(f"No agent registered for vendor {vendor_id}")
        if agent.status == "offline":
            raise AgentOfflineError(f"Agent for vendor {vendor_id} is offline")
        if not self._agent_secret:
            raise AgentConfigurationError("AGENT_SECRET is not configured")
        url = f"{agent.agent_url}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self._agent_secret}",
            "Content-Type": "application/json",
            "X-Vendor-ID": vendor_id,
        }
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id
        breaker = self._breakers.get(vendor_id, api_type)
        logger.debug(f"Calling agent {vendor_id} {endpoint} (correlation_id={correlation_id})")
        return breaker.call(self._post, url, payload, headers)

    def _post(self, url: str, payload: dict, headers: dict) -> Any:
        try:
            resp = self._http.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise AgentUnavailableError(f"Agent call timed out after {self.timeout}s: {url}") from e
        except requests.RequestException as e:
            raise AgentUnavailableError(f"Agent unreachable: {e}") from e
        if resp.status_code >= 500:
            raise AgentUnavailableError(f"Agent returned {resp.status_code} for {url}")
        if resp.status_code >= 400:
            raise AgentRequestError(f"Agent rejected request ({resp.status_code}): {resp.text[:500]}",
                                    status_code=resp.status_code)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise AgentUnavailableError(f"Agent returned invalid JSON for {url}") from e
