"""Category inference for identification labels.

Providers frequently return bare labels ("House Sparrow", "Oak tree") with no
category. The classifier here is the one place that guesses a category from a
label; adapters receive it by injection so it can be swapped or tuned without
touching adapter code.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Protocol, Tuple, Union

from yaml import YAMLError, safe_load

logger = logging.getLogger(__name__)

GENERAL_CATEGORY = "general"

# Checked in order; the first category with a matching word wins.
DEFAULT_CATEGORY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "bird": (
        "bird", "sparrow", "eagle", "hawk", "owl", "crow", "robin", "finch",
        "warbler", "gull", "duck", "heron", "woodpecker", "parrot",
    ),
    "plant": (
        "plant", "tree", "leaf", "flower", "bush", "grass", "fern", "moss",
        "shrub", "oak", "maple", "rose", "daisy", "tulip",
    ),
    "insect": (
        "insect", "butterfly", "bee", "ant", "beetle", "fly", "moth",
        "dragonfly", "wasp", "grasshopper", "ladybug",
    ),
    "animal": (
        "animal", "mammal", "dog", "cat", "horse", "cow", "pig", "sheep",
        "goat", "deer", "bear", "wolf", "fox", "rabbit", "squirrel", "mouse",
        "rat", "elephant", "lion", "tiger", "monkey", "zebra", "giraffe",
    ),
}

_WORD_RE = re.compile(r"[a-z]+")


class CategoryClassifier(Protocol):
    """Anything that maps a label to a category tag."""

    def classify(self, name: str) -> str:
        ...


def _word_forms(word: str) -> Tuple[str, ...]:
    forms = [word, word + "s", word + "es"]
    if word.endswith("y"):
        forms.append(word[:-1] + "ies")
    return tuple(forms)


class KeywordCategoryClassifier:
    """Whole-word keyword matcher with simple plural handling."""

    def __init__(
        self,
        keywords: Optional[Mapping[str, Iterable[str]]] = None,
        fallback: str = GENERAL_CATEGORY,
    ) -> None:
        source = DEFAULT_CATEGORY_KEYWORDS if keywords is None else keywords
        self.fallback = fallback
        self._lookup: Dict[str, str] = {}
        self.categories: Tuple[str, ...] = tuple(source)
        for category, words in source.items():
            for word in words:
                for form in _word_forms(word.strip().lower()):
                    # First category to claim a word keeps it
                    self._lookup.setdefault(form, category)

    def classify(self, name: str) -> str:
        words = _WORD_RE.findall((name or "").lower())
        matches = {self._lookup[word] for word in words if word in self._lookup}
        for category in self.categories:
            if category in matches:
                return category
        return self.fallback


def load_category_keywords(
    path: Union[str, Path],
) -> Dict[str, Tuple[str, ...]]:
    """Load a ``category -> [keywords]`` mapping from YAML.

    Falls back to the built-in keywords when the file is missing or broken.
    """
    try:
        with open(path, "r", encoding="utf-8") as file:
            data = safe_load(file) or {}
    except (OSError, YAMLError) as exc:
        logger.warning("Category keyword file %s unusable, using defaults: %s", path, exc)
        return dict(DEFAULT_CATEGORY_KEYWORDS)
    out: Dict[str, Tuple[str, ...]] = {}
    if isinstance(data, dict):
        for category, words in data.items():
            if isinstance(category, str) and isinstance(words, list):
                cleaned = tuple(w for w in words if isinstance(w, str) and w.strip())
                if cleaned:
                    out[category] = cleaned
    if not out:
        logger.warning("Category keyword file %s has no usable entries, using defaults", path)
        return dict(DEFAULT_CATEGORY_KEYWORDS)
    return out


_default_classifier = KeywordCategoryClassifier()


def infer_category(name: str) -> str:
    """Classify ``name`` with the default keyword classifier."""
    return _default_classifier.classify(name)
