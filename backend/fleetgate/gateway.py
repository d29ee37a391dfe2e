import asyncio
import logging
import signal
from typing import Optional

from fleetgate.config import Settings, settings
from fleetgate.realtime import PositionPublisher
from fleetgate.services.applier import FixApplier
from fleetgate.services.decoders import Dispatcher
from fleetgate.services.health import DeviceHealthTracker
from fleetgate.services.ingest import IngestPipeline
from fleetgate.services.listener import ListenerManager
from fleetgate.services.poller import ConsolePoller
from fleetgate.services.registry import DeviceRegistry
from fleetgate.services.sms import CommandChannel, HttpSmsGateway
from fleetgate.store import LocationStore, MemoryStore, SqlStore

logger = logging.getLogger(__name__)


def build_store(config: Settings) -> LocationStore:
    if not config.DATABASE_URL:
        logger.warning("DATABASE_URL is empty, using the in-memory store (nothing is persisted)")
        return MemoryStore()
    return SqlStore(config.DATABASE_URL)


class Gateway:
    """All ingestion components wired together, shared by the API app and the standalone runner."""

    def __init__(
        self,
        config: Settings,
        store: Optional[LocationStore] = None,
        console_transport=None,
        sms_transport=None,
    ):
        self.config = config
        self.store = store if store is not None else build_store(config)

        self.health = DeviceHealthTracker(heartbeat_timeout=config.HEARTBEAT_TIMEOUT_SECONDS)
        self.registry = DeviceRegistry(self.store, cache_ttl=config.REGISTRY_CACHE_TTL)
        self.applier = FixApplier(self.store, self.health)
        self.dispatcher = Dispatcher(config.decoder_priority)
        self.pipeline = IngestPipeline(self.dispatcher, self.registry, self.applier, self.health)

        self.listeners = ListenerManager(
            self.pipeline,
            host=config.TCP_LISTEN_ADDR,
            max_frame_bytes=config.MAX_FRAME_BYTES,
            idle_timeout=config.CONNECTION_IDLE_TIMEOUT,
            flush_after=config.FRAME_FLUSH_SECONDS,
            udp_queue_size=config.UDP_QUEUE_SIZE,
            udp_workers=config.UDP_WORKERS,
        )

        self.publisher = None
        if config.REDIS_URL:
            self.publisher = PositionPublisher(config.REDIS_URL)
            self.applier.add_listener(self.publisher)

        # built whenever credentials exist so a manual sync works with the loop off
        self.poller = None
        if config.POLL_USERNAME and config.POLL_PASSWORD:
            self.poller = ConsolePoller(
                self.pipeline,
                self.store,
                base_url=config.POLL_BASE_URL,
                username=config.POLL_USERNAME,
                password=config.POLL_PASSWORD,
                interval=config.POLL_INTERVAL_SECONDS,
                timeout=config.POLL_TIMEOUT_SECONDS,
                auth_retries=config.POLL_AUTH_RETRIES,
                device_marker=config.POLL_DEVICE_MARKER,
                transport=console_transport,
            )

        self.sms_gateway = None
        if config.SMS_GATEWAY_URL:
            self.sms_gateway = HttpSmsGateway(config.SMS_GATEWAY_URL, transport=sms_transport)
        self.commands = CommandChannel(
            self.pipeline,
            self.store,
            self.sms_gateway,
            reply_timeout=config.SMS_REPLY_TIMEOUT,
            command_delay=config.SMS_COMMAND_DELAY,
            apn=config.GPS_APN,
            report_interval=config.REPORT_INTERVAL_SECONDS,
            timezone=config.DEVICE_TIMEZONE,
            default_port=config.TCP_PORT,
        )

    async def start(self):
        await self.store.init_models()

        if self.config.TCP_ENABLED:
            try:
                await self.listeners.start_tcp(self.config.TCP_PORT)
            except OSError as e:
                logger.error(f"TCP listener not available on port {self.config.TCP_PORT}: {e}")
        if self.config.UDP_ENABLED:
            try:
                await self.listeners.start_udp(self.config.UDP_PORT)
            except OSError as e:
                logger.error(f"UDP listener not available on port {self.config.UDP_PORT}: {e}")

        if self.poller is not None and self.config.POLL_ENABLED:
            self.poller.start()
        elif self.config.POLL_ENABLED:
            logger.warning("POLL_ENABLED is set but console credentials are missing, poller not started")

    async def stop(self):
        await self.listeners.stop(grace=self.config.SHUTDOWN_GRACE_SECONDS)
        if self.poller is not None:
            await self.poller.stop()
        await self.applier.drain()
        self.commands.cancel_all()
        if self.sms_gateway is not None:
            await self.sms_gateway.close()
        if self.publisher is not None:
            await self.publisher.close()
        await self.store.close()

    def status(self) -> dict:
        return {
            "tcp_port": self.listeners.tcp_port,
            "udp_port": self.listeners.udp_port,
            "active_connections": self.listeners.active_connections,
            "decoders": self.dispatcher.names,
            "poller": self.poller.state.value if self.poller else "disabled",
            "pending_sms_requests": len(self.commands.pending),
        }


async def main(config: Settings = settings):
    gateway = Gateway(config)
    await gateway.start()
    logger.info(f"Gateway running, decoders: {', '.join(gateway.dispatcher.names)}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt
            pass

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down gateway")
        await gateway.stop()


def run():
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format='%(asctime)s - [GATEWAY] - %(levelname)s - %(message)s'
    )
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    run()
