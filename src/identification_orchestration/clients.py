"""Concrete provider adapters: generic HTTP providers and builtin static ones."""

from __future__ import annotations

import asyncio
import base64
import copy
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import httpx

from .classification import CategoryClassifier
from .errors import ProviderError, ProviderTimeoutError
from .models import HealthState, Identification, IdentifyOptions
from .providers import ProviderBase

_DEGRADED_STATUS_CODES = {429, 503}


class HttpIdentificationProvider(ProviderBase):
    """Adapter for providers that speak the generic JSON identification protocol.

    Request: ``POST <endpoint>`` with ``{"image": <base64>, "category": ...,
    "max_results": ..., "request_id": ...}``. Response: ``{"identifications":
    [{"name"|"label", "confidence"|"score", "category"?, "bbox"?, "metadata"?}]}``.
    """

    def __init__(
        self,
        name: str,
        endpoint: str,
        categories: Iterable[str],
        *,
        timeout_seconds: float = 10.0,
        headers: Optional[Mapping[str, str]] = None,
        health_endpoint: Optional[str] = None,
        classifier: Optional[CategoryClassifier] = None,
        max_payload_bytes: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            name, categories, classifier=classifier, max_payload_bytes=max_payload_bytes
        )
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.health_endpoint = health_endpoint or _derive_health_endpoint(endpoint)
        self._headers = dict(headers or {})
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout, headers=self._headers, transport=self._transport
        )

    async def identify(
        self, payload: bytes, options: IdentifyOptions
    ) -> Sequence[Identification]:
        self.validate_payload(payload)
        body = {
            "image": base64.b64encode(payload).decode("ascii"),
            "category": options.category,
            "max_results": options.max_results,
            "request_id": options.request_id,
        }
        try:
            async with self._client(self.timeout_seconds) as client:
                resp = await client.post(self.endpoint, json=body)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(
                f"{self.name} timed out: {exc}", provider=self.name
            ) from exc
        except httpx.HTTPError as exc:  # network errors
            raise ProviderError(
                f"{self.name} request failed: {exc}", provider=self.name
            ) from exc

        if not 200 <= resp.status_code < 300:
            raise ProviderError(
                f"HTTP {resp.status_code}",
                provider=self.name,
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(
                f"{self.name} returned a non-JSON body", provider=self.name
            ) from exc
        items = data.get("identifications") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise ProviderError(
                f"{self.name} response is missing an 'identifications' list",
                provider=self.name,
            )
        return self.standardize_results(items)

    async def health_probe(self) -> HealthState:
        """Check provider liveness via its health endpoint."""

        try:
            async with self._client(min(self.timeout_seconds, 5.0)) as client:
                resp = await client.get(self.health_endpoint)
        except httpx.HTTPError:
            return HealthState.UNHEALTHY
        if resp.status_code == 200:
            return HealthState.HEALTHY
        if resp.status_code in _DEGRADED_STATUS_CODES:
            return HealthState.DEGRADED
        return HealthState.UNHEALTHY


def _derive_health_endpoint(endpoint: str) -> str:
    trimmed = endpoint.rstrip("/")
    if trimmed.endswith("/identify"):
        return trimmed[: -len("/identify")] + "/health"
    return trimmed + "/health"


# Canned results for builtin providers used in demos and tests
BUILTIN_RESULTS: Dict[str, List[Dict[str, Any]]] = {
    "birds": [
        {"name": "House Sparrow", "confidence": 0.82, "category": "bird"},
        {"name": "Eurasian Tree Sparrow", "confidence": 0.41, "category": "bird"},
    ],
    "plants": [
        {"name": "Common Daisy", "confidence": 0.77, "category": "plant"},
        {"name": "Oxeye Daisy", "confidence": 0.52, "category": "plant"},
    ],
    "general": [
        {"name": "House Sparrow", "confidence": 0.64},
        {"name": "Bird", "confidence": 0.93},
        {"name": "Branch", "confidence": 0.58},
    ],
    "empty": [],
}


class StaticIdentificationProvider(ProviderBase):
    """Provider returning fixed results; backs ``builtin:<kind>`` endpoints."""

    def __init__(
        self,
        name: str,
        categories: Iterable[str],
        results: Sequence[Mapping[str, Any]],
        *,
        health: HealthState = HealthState.HEALTHY,
        delay_seconds: float = 0.0,
        classifier: Optional[CategoryClassifier] = None,
        max_payload_bytes: Optional[int] = None,
    ) -> None:
        super().__init__(
            name, categories, classifier=classifier, max_payload_bytes=max_payload_bytes
        )
        self._results = [dict(r) for r in results]
        self._health = health
        self._delay_seconds = delay_seconds

    @classmethod
    def builtin(
        cls,
        name: str,
        kind: str,
        categories: Iterable[str],
        **kwargs: Any,
    ) -> "StaticIdentificationProvider":
        if kind not in BUILTIN_RESULTS:
            raise ValueError(f"Unknown builtin provider kind: {kind}")
        return cls(name, categories, copy.deepcopy(BUILTIN_RESULTS[kind]), **kwargs)

    async def identify(
        self, payload: bytes, options: IdentifyOptions
    ) -> Sequence[Identification]:
        self.validate_payload(payload)
        if self._delay_seconds:
            await asyncio.sleep(self._delay_seconds)
        results = self.standardize_results(self._results)
        if options.max_results is not None:
            results = results[: options.max_results]
        return results

    async def health_probe(self) -> HealthState:
        return self._health
