import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from crm_messaging.core.config import Settings, settings as default_settings
from crm_messaging.core.events import EventSink, PipelineEvent, Severity
from crm_messaging.core.logging import get_logger
from crm_messaging.schemas.connectivity import ConnectivityStatus, EndpointValidation, MonitorStats

logger = get_logger(__name__)

USER_AGENT = "CRM-Messaging-Connectivity-Check"
STATUS_MAX_AGE_SECONDS = 24 * 60 * 60
LOCAL_HOSTS = ("localhost", "127.0.0.1")


class ConnectivityMonitor:
    """
    Reachability probes with a circuit breaker per endpoint.

    closed -> open after ``failure_threshold`` consecutive failed probes.
    While open, probes inside the cooldown are skipped and the endpoint is
    assumed down; the first probe after the cooldown is let through and its
    result decides whether the failure counter resets.
    """

    def __init__(
        self,
        config: Settings = default_settings,
        events: Optional[EventSink] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.failure_threshold = config.CONNECTIVITY_FAILURE_THRESHOLD
        self.cooldown = config.CONNECTIVITY_COOLDOWN_SECONDS
        self.probe_timeout = config.CONNECTIVITY_PROBE_TIMEOUT_SECONDS
        self.check_interval = config.CONNECTIVITY_CHECK_INTERVAL_SECONDS
        self.autofix_delay = config.CONNECTIVITY_AUTOFIX_DELAY_SECONDS
        self.endpoints: List[str] = list(config.CONNECTIVITY_ENDPOINTS)
        self.events = events or EventSink()
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._sleep = sleep
        self._status: Dict[str, ConnectivityStatus] = {}
        self.stats = MonitorStats()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.probe_timeout)
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def add_endpoint(self, url: str):
        if url not in self.endpoints:
            self.endpoints.append(url)

    def remove_endpoint(self, url: str):
        if url in self.endpoints:
            self.endpoints.remove(url)

    async def check_connectivity(self, url: str) -> bool:
        """Probe ``url``. Returns False without probing while the circuit is open."""
        if self.is_circuit_open(url):
            logger.debug("Probe skipped, circuit open", url=url)
            return False

        try:
            response = await self.client.get(
                url,
                headers={"User-Agent": USER_AGENT},
                timeout=self.probe_timeout,
            )
            is_reachable = response.status_code < 500
            logger.info("Connectivity probe", url=url, status_code=response.status_code, reachable=is_reachable)
        except httpx.HTTPError as e:
            logger.warning(f"Connectivity probe failed: {e}", url=url)
            is_reachable = False

        self._record_probe(url, is_reachable)
        return is_reachable

    def _record_probe(self, url: str, is_reachable: bool):
        current = self._status.get(url) or ConnectivityStatus()
        failures = 0 if is_reachable else current.consecutive_failures + 1
        updated = ConnectivityStatus(
            is_reachable=is_reachable,
            last_checked=self._clock(),
            consecutive_failures=failures,
            is_circuit_open=failures >= self.failure_threshold,
        )
        if updated.is_circuit_open and not current.is_circuit_open:
            self.events.emit(PipelineEvent(
                kind="connectivity.circuit_opened",
                severity=Severity.WARNING,
                detail="Circuit breaker opened",
                data={"url": url, "consecutive_failures": failures},
            ))
        self._status[url] = updated

    def is_circuit_open(self, url: str) -> bool:
        status = self._status.get(url)
        if status is None or not status.is_circuit_open:
            return False
        if self._clock() - status.last_checked > self.cooldown:
            logger.info("Cooldown elapsed, letting next probe through", url=url)
            status.is_circuit_open = False
            return False
        return True

    async def validate_before_configuration(self, url: str) -> EndpointValidation:
        if self.is_circuit_open(url):
            return EndpointValidation(
                is_valid=False,
                should_configure=False,
                reason="Circuit breaker open, endpoint unavailable",
            )
        if not await self.check_connectivity(url):
            return EndpointValidation(is_valid=False, should_configure=False, reason="Endpoint is not reachable")
        return EndpointValidation(is_valid=True, should_configure=True)

    def get_status(self, url: str) -> Optional[ConnectivityStatus]:
        status = self._status.get(url)
        return status.model_copy() if status else None

    def get_all_stats(self) -> Dict[str, ConnectivityStatus]:
        return {url: status.model_copy() for url, status in self._status.items()}

    def reset_circuit_breaker(self, url: str) -> bool:
        status = self._status.get(url)
        if status is None:
            return False
        status.is_circuit_open = False
        status.consecutive_failures = 0
        logger.info("Circuit breaker reset", url=url)
        return True

    def cleanup_old_status(self) -> int:
        now = self._clock()
        stale = [url for url, status in self._status.items() if now - status.last_checked > STATUS_MAX_AGE_SECONDS]
        for url in stale:
            del self._status[url]
        return len(stale)

    async def check_and_fix(self, url: str) -> bool:
        """Probe ``url``; on failure try to recover it before alerting."""
        if await self.check_connectivity(url):
            return True

        self.stats.failed_checks += 1
        return await self.attempt_auto_fix(url)

    async def attempt_auto_fix(self, url: str) -> bool:
        self.stats.auto_fix_attempts += 1

        if any(host in url for host in LOCAL_HOSTS):
            await self._sleep(self.autofix_delay)
            if await self.check_connectivity(url):
                self.stats.successful_fixes += 1
                logger.info("Local endpoint recovered", url=url)
                return True

        self.events.emit(PipelineEvent(
            kind="connectivity.endpoint_down",
            severity=Severity.HIGH,
            detail="Endpoint unreachable",
            data={"url": url, "consecutive_failures": self._status[url].consecutive_failures if url in self._status else 0},
        ))
        return False

    async def run_checks(self) -> Dict[str, bool]:
        """One monitoring pass over every configured endpoint."""
        self.stats.total_checks += 1
        self.stats.last_check = self._clock()
        results = {}
        for url in list(self.endpoints):
            results[url] = await self.check_and_fix(url)
        self.cleanup_old_status()
        return results

    async def run_monitoring(self):
        """Monitoring loop; cancel the task to stop it."""
        self.stats.is_monitoring = True
        logger.info("Connectivity monitoring started", endpoints=len(self.endpoints), interval=self.check_interval)
        try:
            while True:
                try:
                    await self.run_checks()
                except Exception as e:
                    logger.error(f"Connectivity monitoring pass failed: {e}")
                await self._sleep(self.check_interval)
        finally:
            self.stats.is_monitoring = False
