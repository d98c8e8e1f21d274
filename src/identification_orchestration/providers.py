"""Provider contract shared by every identification adapter."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError as ModelValidationError

from .classification import CategoryClassifier, KeywordCategoryClassifier
from .errors import ProviderError
from .models import BoundingBox, HealthState, Identification, IdentifyOptions
from .validation import DecodedPayload, decode_payload


class IdentificationProvider(ABC):
    """Capability interface every provider adapter implements."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider identifier."""

    @abstractmethod
    async def identify(
        self, payload: bytes, options: IdentifyOptions
    ) -> Sequence[Identification]:
        """Identify the payload; raise ProviderError (or subclass) on failure."""

    @abstractmethod
    def supported_categories(self) -> FrozenSet[str]:
        """Return the category tags this provider can identify."""

    @abstractmethod
    async def health_probe(self) -> HealthState:
        """Report provider liveness without side effects on breakers."""

    def supports(self, category: str) -> bool:
        return category in self.supported_categories()

    async def aclose(self) -> None:
        """Release any resources acquired by the adapter."""


class ProviderBase(IdentificationProvider):
    """Base implementation that handles repeated adapter plumbing."""

    def __init__(
        self,
        name: str,
        categories: Iterable[str],
        *,
        classifier: Optional[CategoryClassifier] = None,
        max_payload_bytes: Optional[int] = None,
    ) -> None:
        self._name = name
        self._categories = frozenset(categories)
        self._classifier = classifier or KeywordCategoryClassifier()
        self._max_payload_bytes = max_payload_bytes
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # --- interface implementation -------------------------------------------------
    @property
    def name(self) -> str:
        return self._name

    def supported_categories(self) -> FrozenSet[str]:
        return self._categories

    async def health_probe(self) -> HealthState:
        return HealthState.HEALTHY

    # --- helpers for subclasses ---------------------------------------------------
    def validate_payload(self, payload: bytes) -> DecodedPayload:
        """Apply this adapter's own size limit on top of the request-level check."""
        if self._max_payload_bytes is None:
            return decode_payload(payload)
        return decode_payload(payload, self._max_payload_bytes)

    def standardize_results(self, raw_results: Iterable[Any]) -> List[Identification]:
        """Map loosely shaped provider dicts onto :class:`Identification`."""

        standardized: List[Identification] = []
        for raw in raw_results:
            if not isinstance(raw, Mapping):
                raise ProviderError(
                    f"Malformed result from {self._name}: expected an object",
                    provider=self._name,
                )
            name = str(raw.get("name") or raw.get("label") or "Unknown").strip() or "Unknown"
            confidence = raw.get("confidence", raw.get("score", 0.0))
            try:
                confidence = min(max(float(confidence), 0.0), 1.0)
            except (TypeError, ValueError):
                raise ProviderError(
                    f"Malformed confidence from {self._name}: {confidence!r}",
                    provider=self._name,
                ) from None
            category = raw.get("category") or raw.get("type") or self._classifier.classify(name)
            metadata = raw.get("metadata")
            try:
                standardized.append(
                    Identification(
                        name=name,
                        confidence=confidence,
                        category=str(category),
                        source_provider=self._name,
                        bounding_box=self._bounding_box(
                            raw.get("bounding_box") or raw.get("boundingBox") or raw.get("bbox")
                        ),
                        metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
                    )
                )
            except ModelValidationError as exc:
                raise ProviderError(
                    f"Malformed result from {self._name}: {exc}", provider=self._name
                ) from exc
        return standardized

    def _bounding_box(self, raw: Any) -> Optional[BoundingBox]:
        if isinstance(raw, Mapping):
            try:
                return BoundingBox(
                    x=raw.get("x", 0.0),
                    y=raw.get("y", 0.0),
                    width=raw.get("width", 0.0),
                    height=raw.get("height", 0.0),
                )
            except ModelValidationError:
                self._logger.debug("Dropping malformed bounding box from %s", self._name)
                return None
        if isinstance(raw, (list, tuple)) and len(raw) == 4:
            try:
                return BoundingBox(x=raw[0], y=raw[1], width=raw[2], height=raw[3])
            except ModelValidationError:
                self._logger.debug("Dropping malformed bounding box from %s", self._name)
                return None
        return None


__all__ = ["IdentificationProvider", "ProviderBase"]
