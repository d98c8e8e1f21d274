"""Result aggregation for multi-provider identification.

This module merges the identifications returned by several providers into a
single ranked, deduplicated list. :func:`rank_identifications` is the only
implementation of the scoring rules; the orchestrator's request path and the
client-side preview path both go through it.

Scoring per group of same-entity identifications::

    merged = peak + agreement_bonus * (providers - 1) + priority_bonus (if any
             contributing provider is priority 1 for the category), clamped to [0, 1]

Adding a provider that agrees on an entity never lowers that entity's score.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .config import AggregationWeights
from .models import AggregatedIdentification, Identification, ProviderSuccess

# Scores are rounded so threshold comparisons and output are exact
_SCORE_DECIMALS = 6


def normalize_entity_key(name: str) -> str:
    """Grouping key: case-insensitive, surrounding whitespace ignored."""
    return name.strip().casefold()


def merge_confidence(
    peak: float,
    provider_count: int,
    has_priority: bool,
    weights: AggregationWeights,
) -> float:
    """Combine peak confidence with the agreement and priority bonuses."""
    score = peak + weights.agreement_bonus * max(provider_count - 1, 0)
    if has_priority:
        score += weights.priority_bonus
    return round(min(max(score, 0.0), 1.0), _SCORE_DECIMALS)


@dataclass
class _Group:
    key: str
    order: int
    members: List[Identification] = field(default_factory=list)
    providers: List[str] = field(default_factory=list)
    has_priority: bool = False


def _provider_index(order: Mapping[str, int], provider: str) -> int:
    return order.get(provider, len(order))


def rank_identifications(
    identifications: Iterable[Identification],
    *,
    provider_order: Optional[Sequence[str]] = None,
    priorities: Optional[Mapping[str, Mapping[str, int]]] = None,
    weights: Optional[AggregationWeights] = None,
    category: Optional[str] = None,
    restrict_to_category: bool = False,
    min_confidence: Optional[float] = None,
    max_results: Optional[int] = None,
) -> List[AggregatedIdentification]:
    """Group, score, rank, filter and truncate identifications.

    ``provider_order`` is the provider registration order used to break score
    ties; providers missing from it rank after the listed ones, by name. When
    omitted, the first-seen order of ``identifications`` is used. The output
    depends only on the identifications each provider returned, never on the
    order providers finished in.
    """

    weights = weights or AggregationWeights()
    priorities = priorities or {}
    items = list(identifications)

    if provider_order is None:
        provider_order = list(dict.fromkeys(item.source_provider for item in items))
    order = {name: idx for idx, name in enumerate(provider_order)}
    # Stable sort: members keep each provider's own result order
    items.sort(key=lambda item: (_provider_index(order, item.source_provider), item.source_provider))

    groups: Dict[str, _Group] = {}
    for item in items:
        key = normalize_entity_key(item.name)
        group = groups.get(key)
        if group is None:
            group = _Group(key=key, order=_provider_index(order, item.source_provider))
            groups[key] = group
        group.members.append(item)
        if item.source_provider not in group.providers:
            group.providers.append(item.source_provider)
        provider_priorities = priorities.get(item.source_provider, {})
        if provider_priorities.get(item.category) == 1 or (
            category is not None and provider_priorities.get(category) == 1
        ):
            group.has_priority = True

    merged: List[tuple[float, int, str, AggregatedIdentification]] = []
    for group in groups.values():
        aggregated = _merge_group(group, weights)
        merged.append((-aggregated.merged_confidence, group.order, group.key, aggregated))
    merged.sort(key=lambda entry: entry[:3])

    threshold = weights.min_confidence if min_confidence is None else min_confidence
    limit = weights.max_results if max_results is None else max_results

    ranked = [entry[3] for entry in merged]
    if restrict_to_category and category is not None:
        ranked = [agg for agg in ranked if agg.category == category]
    ranked = [agg for agg in ranked if agg.merged_confidence >= threshold]
    return ranked[:limit]


def _merge_group(group: _Group, weights: AggregationWeights) -> AggregatedIdentification:
    peak = max(member.confidence for member in group.members)
    representative = next(m for m in group.members if m.confidence == peak)
    bounding_box = representative.bounding_box
    if bounding_box is None:
        bounding_box = next(
            (m.bounding_box for m in group.members if m.bounding_box is not None), None
        )
    metadata: Dict[str, Any] = dict(representative.metadata)
    for member in group.members:
        for key, value in member.metadata.items():
            metadata.setdefault(key, value)
    return AggregatedIdentification(
        name=representative.name.strip(),
        category=representative.category,
        merged_confidence=merge_confidence(peak, len(group.providers), group.has_priority, weights),
        peak_confidence=peak,
        contributing_providers=list(group.providers),
        bounding_box=bounding_box,
        metadata=metadata,
    )


class ResultAggregator:
    """Turns per-provider outcomes into one ranked list of identifications."""

    def __init__(self, weights: Optional[AggregationWeights] = None) -> None:
        self.weights = weights or AggregationWeights()

    def aggregate(
        self,
        outcomes: Iterable[Any],
        *,
        provider_order: Sequence[str],
        priorities: Optional[Mapping[str, Mapping[str, int]]] = None,
        category: Optional[str] = None,
        restrict_to_category: bool = False,
        min_confidence: Optional[float] = None,
        max_results: Optional[int] = None,
    ) -> List[AggregatedIdentification]:
        """Aggregate successful outcomes; failures and short-circuits contribute nothing."""

        identifications: List[Identification] = []
        for outcome in outcomes:
            if isinstance(outcome, ProviderSuccess):
                identifications.extend(outcome.identifications)
        return rank_identifications(
            identifications,
            provider_order=provider_order,
            priorities=priorities,
            weights=self.weights,
            category=category,
            restrict_to_category=restrict_to_category,
            min_confidence=min_confidence,
            max_results=max_results,
        )

    def preview(
        self,
        identifications: Iterable[Union[Identification, Mapping[str, Any]]],
        *,
        provider_order: Optional[Sequence[str]] = None,
        priorities: Optional[Mapping[str, Mapping[str, int]]] = None,
        category: Optional[str] = None,
        min_confidence: Optional[float] = None,
        max_results: Optional[int] = None,
    ) -> List[AggregatedIdentification]:
        """Rank identifications a client already holds, with the server's scoring."""

        items = [
            item if isinstance(item, Identification) else Identification.model_validate(item)
            for item in identifications
        ]
        return rank_identifications(
            items,
            provider_order=provider_order,
            priorities=priorities,
            weights=self.weights,
            category=category,
            min_confidence=min_confidence,
            max_results=max_results,
        )


__all__ = [
    "ResultAggregator",
    "merge_confidence",
    "normalize_entity_key",
    "rank_identifications",
]
