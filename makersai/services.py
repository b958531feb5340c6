"""Wiring of settings into the long-lived collaborators of the application."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from makersai.admission import AdmissionController, LayeredAdmission, build_admission_controllers
from makersai.cache import FileCacheStore, MemoryCacheStore, build_cache_store
from makersai.config import Settings
from makersai.feasibility import ProfileRegistry
from makersai.orchestrator import Orchestrator
from makersai.providers import build_provider
from makersai.stages import InferenceProvider, StageExecutor
from makersai.storage import DesignStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    cache: Union[MemoryCacheStore, FileCacheStore]
    provider: InferenceProvider
    executor: StageExecutor
    general_admission: AdmissionController
    generation_admission: AdmissionController
    profiles: ProfileRegistry
    store: Optional[DesignStore]
    orchestrator: Orchestrator

    def start(self) -> None:
        self.cache.start()
        logger.info(
            "✅ Services started (provider=%s, cache=%s, rate limiting=%s)",
            self.settings.model.provider,
            self.settings.cache.backend if self.settings.cache.enabled else "disabled",
            "on" if self.settings.rate_limit.enabled else "off",
        )

    def close(self) -> None:
        self.cache.close()
        if self.store is not None:
            self.store.close()


def build_services(
    settings: Settings,
    provider: Optional[Any] = None,
    store: Optional[DesignStore] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Services:
    """Construct every collaborator from ``settings``.

    ``provider`` and ``store`` replace the configured ones when given.
    """
    cache = build_cache_store(settings.cache)
    provider = provider or build_provider(settings)
    executor = StageExecutor(provider, cache, ttl_seconds=settings.cache.ttl_seconds)
    general, strict = build_admission_controllers(settings.rate_limit, clock=clock)
    profiles = ProfileRegistry()

    if store is None and settings.storage.enabled:
        store = DesignStore(settings.storage.database_path)

    orchestrator = Orchestrator(
        executor,
        admission=LayeredAdmission(strict),
        profiles=profiles,
        usage_sink=store,
        max_pipeline_seconds=settings.pipeline.max_pipeline_seconds,
        clock=clock,
    )
    return Services(
        settings=settings,
        cache=cache,
        provider=provider,
        executor=executor,
        general_admission=general,
        generation_admission=strict,
        profiles=profiles,
        store=store,
        orchestrator=orchestrator,
    )
