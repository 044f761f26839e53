"""
Deployment Name Resolution
==========================
Map Azure deployment names to canonical model names for pricing.

Azure lets operators name deployments freely ("prod-gpt4o-eastus"), so the
mapping is heuristic: an ordered list of family rules followed by an exact
match against known model names. Unresolved names are returned unchanged
with a single warning per distinct name.
"""

import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Optional

import structlog

from revenium_openai.constants import KNOWN_MODELS

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ModelRule:
    """
    A model family rule.

    The first matching variant wins; without a variant match the rule
    yields ``default``, and a ``None`` default lets later rules try.
    """

    pattern: re.Pattern[str]
    variants: tuple[tuple[re.Pattern[str], str], ...] = ()
    default: Optional[str] = None

    def resolve(self, name: str) -> Optional[str]:
        if not self.pattern.search(name):
            return None
        for variant, model in self.variants:
            if variant.search(name):
                return model
        return self.default


def _rule(pattern: str, variants: tuple[tuple[str, str], ...] = (), default: Optional[str] = None) -> ModelRule:
    return ModelRule(
        pattern=re.compile(pattern),
        variants=tuple((re.compile(p), model) for p, model in variants),
        default=default,
    )


MODEL_RULES: tuple[ModelRule, ...] = (
    _rule(r"gpt-?4\.1", (("nano", "gpt-4.1-nano"), ("mini", "gpt-4.1-mini")), "gpt-4.1"),
    _rule(r"gpt-?4o|o4", (("mini", "gpt-4o-mini"),), "gpt-4o"),
    _rule(r"gpt-?4(?!o)", (("turbo", "gpt-4-turbo"), ("vision", "gpt-4-vision-preview")), "gpt-4"),
    _rule(
        r"gpt-?3\.?5|35-turbo",
        (("instruct", "gpt-3.5-turbo-instruct"),),
        "gpt-3.5-turbo",
    ),
    _rule(
        r"embed",
        (
            (r"3-large|large", "text-embedding-3-large"),
            (r"3-small|small", "text-embedding-3-small"),
            (r"ada", "text-embedding-ada-002"),
        ),
    ),
    _rule(r"ada-?002", default="text-embedding-ada-002"),
    _rule(r"dall-?e", ((r"3", "dall-e-3"), (r"2", "dall-e-2"))),
    _rule(r"whisper", default="whisper-1"),
    _rule(r"tts", (("hd", "tts-1-hd"),), "tts-1"),
)


@dataclass
class CacheStats:
    """Snapshot of the resolver caches."""

    size: int
    warned: int
    entries: dict[str, str] = field(default_factory=dict)


class DeploymentResolver:
    """Resolve deployment names with a per-process cache."""

    def __init__(self, rules: tuple[ModelRule, ...] = MODEL_RULES, known_models: Iterable[str] = KNOWN_MODELS):
        self._rules = rules
        self._known_models = frozenset(known_models)
        self._cache: dict[str, str] = {}
        self._warned: set[str] = set()
        self._lock = threading.Lock()

    def _match(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for rule in self._rules:
            resolved = rule.resolve(lowered)
            if resolved is not None:
                return resolved
        if lowered in self._known_models:
            return lowered
        return None

    def resolve(self, deployment_name: str, use_cache: bool = True) -> str:
        """
        Resolve a deployment name to a canonical model name.

        Args:
            deployment_name: Deployment (or model) name as reported by Azure
            use_cache: Consult and populate the cache

        Returns:
            The canonical model name, or the input when nothing matched
        """
        if not deployment_name:
            return deployment_name

        if use_cache:
            cached = self._cache.get(deployment_name)
            if cached is not None:
                return cached

        resolved = self._match(deployment_name)
        if resolved is None:
            resolved = deployment_name
            with self._lock:
                first_time = deployment_name not in self._warned
                self._warned.add(deployment_name)
            if first_time:
                logger.warning(
                    "Could not resolve Azure deployment name to a known model; "
                    "using it as the model name",
                    deployment=deployment_name,
                )
        elif resolved != deployment_name:
            logger.debug("Resolved Azure deployment", deployment=deployment_name, model=resolved)

        if use_cache:
            self._cache[deployment_name] = resolved
        return resolved

    def would_transform(self, deployment_name: str) -> bool:
        """Check whether a name would be rewritten, without touching the cache."""
        resolved = self._match(deployment_name) if deployment_name else None
        return resolved is not None and resolved != deployment_name

    def resolve_many(self, deployment_names: Iterable[str]) -> dict[str, str]:
        return {name: self.resolve(name) for name in deployment_names}

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._warned.clear()

    def stats(self) -> CacheStats:
        entries = dict(self._cache)
        return CacheStats(size=len(entries), warned=len(self._warned), entries=entries)


_default_resolver = DeploymentResolver()


def resolve_deployment_name(deployment_name: str, use_cache: bool = True) -> str:
    """Resolve a deployment name with the process-wide resolver."""
    return _default_resolver.resolve(deployment_name, use_cache=use_cache)


def clear_model_name_cache() -> None:
    _default_resolver.clear()


def get_cache_stats() -> CacheStats:
    return _default_resolver.stats()


def batch_resolve(deployment_names: Iterable[str]) -> dict[str, str]:
    return _default_resolver.resolve_many(deployment_names)


def would_transform(deployment_name: str) -> bool:
    return _default_resolver.would_transform(deployment_name)
