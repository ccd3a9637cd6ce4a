"""
Dependency injection setup for the application.
Provides FastAPI dependencies for the engagement store, scoring, feed and metrics sessions.
"""

from functools import lru_cache
from typing import Annotated
from fastapi import Depends

from recipe_feed_server.db.engagement_store import EngagementStore
from recipe_feed_server.metrics.aggregator import AggregatorRegistry
from recipe_feed_server.recommendations.feed import FeedPaginator
from recipe_feed_server.recommendations.scoring import ScoringEngine


@lru_cache()
def get_store() -> EngagementStore:
    """Get the EngagementStore instance (singleton)."""
    return EngagementStore()


@lru_cache()
def get_scoring() -> ScoringEngine:
    return ScoringEngine(get_store())


@lru_cache()
def get_paginator() -> FeedPaginator:
    return FeedPaginator(get_store(), scoring=get_scoring())


@lru_cache()
def get_registry() -> AggregatorRegistry:
    """Per-process registry of live metrics sessions."""
    return AggregatorRegistry(get_store(), scoring=get_scoring())


def reset_dependencies() -> None:
    """Drop cached singletons (tests swap the database between cases)."""
    for fn in (get_store, get_scoring, get_paginator, get_registry):
        fn.cache_clear()


# FastAPI dependency type annotations
StoreDep = Annotated[EngagementStore, Depends(get_store)]
ScoringDep = Annotated[ScoringEngine, Depends(get_scoring)]
PaginatorDep = Annotated[FeedPaginator, Depends(get_paginator)]
RegistryDep = Annotated[AggregatorRegistry, Depends(get_registry)]
