"""
Call Bridge Orchestrator.

Main entry point that coordinates all components:
- Manager-interface client reading the PBX event stream
- Correlation engine turning events into call records
- Subscriber hub and outbound relay for notifications
- Health and metrics endpoints
"""

import asyncio
import logging
from typing import Optional

from ..ami import AMIClient
from ..config import BridgeConfig, get_config
from ..db import PersistenceGateway
from ..health import HealthChecker
from ..metrics import MetricsCollector
from ..websocket import NotificationFanout, NotificationRelay, RelayAuth, SubscriberHub
from .call_session import CallSessionRegistry
from .engine import CallCorrelationEngine
from .recording import RecordingFetcher
from .task_registry import TaskRegistry

logger = logging.getLogger("callbridge.bridge")


class CallBridge:
    """Wires the PBX event stream to the CRM store and its subscribers."""

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        gateway: Optional[PersistenceGateway] = None,
    ):
        self.config = config or get_config()
        cfg = self.config

        self.metrics: Optional[MetricsCollector] = (
            MetricsCollector(port=cfg.metrics_port) if cfg.metrics_port else None
        )
        self.tasks = TaskRegistry()
        self.registry = CallSessionRegistry(self.tasks)

        self.gateway = gateway or PersistenceGateway(
            cfg.database_url,
            pool_size=cfg.db_pool_size,
            echo=cfg.debug,
        )

        self.hub = SubscriberHub(
            gateway=self.gateway,
            host=cfg.hub_host,
            port=cfg.hub_port,
            metrics=self.metrics,
        )

        self.relay: Optional[NotificationRelay] = None
        if cfg.relay_urls:
            auth = RelayAuth(cfg.relay_secret, cfg.relay_client_id) if cfg.relay_auth_enabled else None
            self.relay = NotificationRelay(
                urls=cfg.relay_urls,
                queue_maxsize=cfg.relay_queue_maxsize,
                reconnect_interval=cfg.relay_reconnect_interval,
                auth=auth,
            )

        self.fanout = NotificationFanout(hub=self.hub, relay=self.relay, metrics=self.metrics)

        self.ami = AMIClient(
            host=cfg.ami_host,
            port=cfg.ami_port,
            username=cfg.ami_username,
            secret=cfg.ami_secret,
            error_backoff=cfg.ami_error_backoff,
            close_backoff=cfg.ami_close_backoff,
            max_buffer=cfg.ami_max_buffer,
            metrics=self.metrics,
        )
        self.fetcher = RecordingFetcher(
            self.ami,
            timeout=cfg.recording_timeout,
            variable=cfg.recording_variable,
        )
        self.engine = CallCorrelationEngine(
            gateway=self.gateway,
            fanout=self.fanout,
            registry=self.registry,
            tasks=self.tasks,
            fetcher=self.fetcher,
            eviction_delay=cfg.eviction_delay,
            metrics=self.metrics,
        )
        self.ami.on_blocks = self.engine.handle_blocks

        self.health: Optional[HealthChecker] = None
        if cfg.health_port:
            self.health = HealthChecker(port=cfg.health_port)
            self.health.register_check("ami", self.ami.is_healthy)
            self.health.register_async_check("database", self.gateway.ping)
            self.health.register_check("hub", lambda: self.hub.is_running)

    async def start(self) -> None:
        """Start every component; the AMI client connects in the background."""
        cfg = self.config

        logger.info("=" * 60)
        logger.info("Call Bridge Starting")
        logger.info("=" * 60)
        logger.info(f"AMI: {cfg.ami_host}:{cfg.ami_port} as {cfg.ami_username}")
        logger.info(f"Subscriber hub: {cfg.hub_host}:{cfg.hub_port}")
        logger.info(f"Relay targets: {len(cfg.relay_urls)}")
        logger.info("=" * 60)

        if self.metrics:
            self.metrics.start()
        if self.health:
            await self.health.start()

        await self.hub.start()
        if self.relay:
            await self.relay.start()

        await self.ami.start()

    async def stop(self) -> None:
        """Stop the bridge, releasing connections in reverse start order."""
        await self.ami.stop()
        await self.tasks.shutdown()

        if self.relay:
            await self.relay.stop()
        await self.hub.stop()
        if self.health:
            await self.health.stop()
        await self.gateway.close()

        logger.info("=" * 60)
        logger.info(f"Call Bridge Stopped. {self.engine.get_stats()}")
        logger.info("=" * 60)

    async def run_forever(self, shutdown_event: asyncio.Event) -> None:
        await self.start()
        try:
            await shutdown_event.wait()
        finally:
            await self.stop()
