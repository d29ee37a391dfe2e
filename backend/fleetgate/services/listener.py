import asyncio
import logging
from typing import Optional

from fleetgate.services.framing import FrameBuffer
from fleetgate.services.ingest import IngestPipeline

logger = logging.getLogger(__name__)

ACK = b"OK\n"
NAK = b"ERROR\n"
READ_SIZE = 4096


class _Connection:
    def __init__(self, task: asyncio.Task, peer: str):
        self.task = task
        self.peer = peer
        self.busy = False


class _TrackerDatagramProtocol(asyncio.DatagramProtocol):
    def __init__(self, manager: "ListenerManager"):
        self.manager = manager

    def datagram_received(self, data, addr):
        self.manager.enqueue_datagram(data, addr)

    def error_received(self, exc):
        logger.warning(f"UDP socket error: {exc}")


class ListenerManager:
    """
    TCP and UDP front door for tracker hardware.

    Every TCP connection gets its own handler task for its whole lifetime. Frames
    are acknowledged with OK when they decode and ERROR when they don't; a bad
    frame never closes the link. UDP datagrams are queued and applied by a small
    worker pool with no acknowledgement; when the queue is full the datagram is
    dropped and counted.
    """

    def __init__(
        self,
        pipeline: IngestPipeline,
        host: str = "0.0.0.0",
        max_frame_bytes: int = 4096,
        idle_timeout: float = 300.0,
        flush_after: float = 1.0,
        udp_queue_size: int = 1000,
        udp_workers: int = 4,
    ):
        self.pipeline = pipeline
        self.host = host
        self.max_frame_bytes = max_frame_bytes
        self.idle_timeout = idle_timeout
        self.flush_after = flush_after
        self.udp_queue_size = udp_queue_size
        self.udp_workers = udp_workers

        self._tcp_server: Optional[asyncio.AbstractServer] = None
        self._connections: dict[asyncio.Task, _Connection] = {}
        self._udp_transport: Optional[asyncio.DatagramTransport] = None
        self._udp_queue: Optional[asyncio.Queue] = None
        self._udp_tasks: list[asyncio.Task] = []
        self.connections_total = 0
        self._stopping = False

    # ---------------------------------------------------------
    # TCP
    # ---------------------------------------------------------

    async def start_tcp(self, port: int):
        self._tcp_server = await asyncio.start_server(self.handle_tracker, self.host, port)
        logger.info(f"TCP listener on {self.host}:{self.tcp_port}")

    @property
    def tcp_port(self) -> Optional[int]:
        if not self._tcp_server or not self._tcp_server.sockets:
            return None
        return self._tcp_server.sockets[0].getsockname()[1]

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    async def handle_tracker(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handles one tracker connection until it closes, idles out or the listener stops."""
        addr = writer.get_extra_info("peername")
        peer = f"{addr[0]}:{addr[1]}" if addr else "unknown"
        conn = _Connection(asyncio.current_task(), peer)
        self._connections[conn.task] = conn
        self.connections_total += 1
        logger.info(f"New Connection: {peer}")

        framer = FrameBuffer(self.max_frame_bytes)
        try:
            while True:
                timeout = self.flush_after if framer.buffer else self.idle_timeout
                try:
                    data = await asyncio.wait_for(reader.read(READ_SIZE), timeout)
                except asyncio.TimeoutError:
                    if framer.buffer:
                        # unterminated text frame, the device is waiting for an answer
                        await self._handle_frames(conn, framer.flush(), writer)
                        continue
                    logger.info(f"Idle timeout, closing {peer}")
                    break

                if not data:
                    break
                logger.debug(f"Recv {len(data)}B from {peer} | {data.hex()[:20]}...")
                await self._handle_frames(conn, framer.feed(data), writer)
                if self._stopping:
                    break

            await self._handle_frames(conn, framer.flush(), writer)
        except (ConnectionError, OSError) as e:
            logger.warning(f"Connection error from {peer}: {e}")
        except asyncio.CancelledError:
            logger.info(f"Force-closing {peer}")
            raise
        except Exception as e:
            logger.error(f"Error handling {peer}: {e}", exc_info=True)
        finally:
            self._connections.pop(conn.task, None)
            logger.info(f"Closed {peer}")
            writer.close()

    async def _handle_frames(self, conn: _Connection, frames: list[bytes], writer: asyncio.StreamWriter):
        if not frames:
            return
        conn.busy = True
        try:
            for frame in frames:
                result = await self.pipeline.ingest_frame(frame, source="tcp", peer=conn.peer)
                if writer.is_closing():
                    continue
                writer.write(ACK if result.decoded else NAK)
                await writer.drain()
        finally:
            conn.busy = False

    # ---------------------------------------------------------
    # UDP
    # ---------------------------------------------------------

    async def start_udp(self, port: int):
        loop = asyncio.get_running_loop()
        self._udp_queue = asyncio.Queue(maxsize=self.udp_queue_size)
        self._udp_transport, _ = await loop.create_datagram_endpoint(
            lambda: _TrackerDatagramProtocol(self),
            local_addr=(self.host, port),
        )
        self._udp_tasks = [
            asyncio.create_task(self._udp_worker(i), name=f"udp-worker-{i}")
            for i in range(self.udp_workers)
        ]
        logger.info(f"UDP listener on {self.host}:{self.udp_port} ({self.udp_workers} workers)")

    @property
    def udp_port(self) -> Optional[int]:
        if not self._udp_transport:
            return None
        return self._udp_transport.get_extra_info("sockname")[1]

    def enqueue_datagram(self, data: bytes, addr):
        peer = f"{addr[0]}:{addr[1]}" if addr else "unknown"
        try:
            self._udp_queue.put_nowait((data, peer))
        except asyncio.QueueFull:
            self.pipeline.health.record("dropped", "udp")
            logger.warning(f"UDP queue full, dropped {len(data)}B from {peer}")

    async def _udp_worker(self, index: int):
        while True:
            data, peer = await self._udp_queue.get()
            try:
                framer = FrameBuffer(self.max_frame_bytes)
                for frame in framer.feed(data) + framer.flush():
                    await self.pipeline.ingest_frame(frame, source="udp", peer=peer)
            except Exception as e:
                logger.error(f"UDP worker {index} failed on packet from {peer}: {e}", exc_info=True)
            finally:
                self._udp_queue.task_done()

    # ---------------------------------------------------------
    # Shutdown
    # ---------------------------------------------------------

    async def stop(self, grace: float = 5.0):
        """
        Stop accepting, let in-flight work finish for up to `grace` seconds,
        then force-close whatever is left.
        """
        self._stopping = True
        if self._tcp_server:
            self._tcp_server.close()
        if self._udp_transport:
            self._udp_transport.close()

        # idle connections are only waiting on a read; close them now
        for conn in list(self._connections.values()):
            if not conn.busy:
                conn.task.cancel()

        pending = [conn.task for conn in self._connections.values()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=grace)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if self._udp_queue is not None and self._udp_tasks:
            try:
                await asyncio.wait_for(self._udp_queue.join(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(f"UDP queue not drained after {grace}s, {self._udp_queue.qsize()} packets discarded")
            for task in self._udp_tasks:
                task.cancel()
            await asyncio.gather(*self._udp_tasks, return_exceptions=True)
            self._udp_tasks = []

        if self._tcp_server:
            await self._tcp_server.wait_closed()
            self._tcp_server = None
        self._udp_transport = None
        logger.info("Listeners stopped")
