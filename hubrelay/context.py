"""Wiring of the resilience components for one process."""

from typing import Optional

from loguru import logger

from .circuit import CircuitBreakerRegistry
from .client import HubClient, region_url
from .models import Config
from .offline import OfflineQueue
from .orchestrator import JobOrchestrator, JobService
from .retry import RetryPolicy
from .settings import Settings
from .storage import Storage

log = logger.bind(component="context")


class RelayContext:
    """Owns storage, the breaker registry, the offline queue and the orchestrator.

    Built once per process and handed to whatever needs it; nothing in
    hubrelay keeps module-level state.
    """

    def __init__(
        self,
        settings: Settings,
        service: Optional[JobService] = None,
        config: Optional[Config] = None,
    ) -> None:
        self.settings = settings
        self.storage = Storage(settings.data_dir)
        self.config = config or self.storage.get_config()
        self.client: Optional[HubClient] = None
        if service is None:
            self.client = HubClient(
                settings.base_url or region_url(settings.region),
                api_key=settings.api_key,
                timeout=settings.http_timeout,
            )
            service = self.client
        self.offline = OfflineQueue(self.storage, self.config)
        self.breakers = CircuitBreakerRegistry(offline_queue=self.offline)
        self.retry = RetryPolicy()
        self.orchestrator = JobOrchestrator(
            service,
            self.retry,
            self.breakers,
            self.offline,
            storage=self.storage,
            config=self.config,
        )
        log.debug(f"Context ready, data in {settings.data_dir}")

    async def ping(self) -> bool:
        """True when the external service is reachable."""
        if self.client is None:
            return True
        return await self.client.ping()

    async def close(self) -> None:
        await self.orchestrator.close()
        await self.offline.stop()
        if self.client is not None:
            await self.client.aclose()

    async def __aenter__(self) -> "RelayContext":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
