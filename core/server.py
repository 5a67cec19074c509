import asyncio
import logging
import os
import socket
import time
from typing import Callable, Dict, Optional, Tuple

from core.dispatcher import Dispatcher
from core.leases import LeaseManager
from core.packet import DHCPMessage, DHCPNAK, DHCPReply, ZERO_ADDRESS
from utils.config import ServerConfig

logger = logging.getLogger("dorad.server")

CLIENT_PORT = 68
BROADCAST_IP = '255.255.255.255'
# upper bound on tracked rate-limit buckets; the oldest go first
MAX_RATE_BUCKETS = 4096
BUCKET_PRUNE_INTERVAL = 60


def reply_destination(message: DHCPMessage, reply: DHCPReply) -> Tuple[str, int]:
    """Pick where a reply goes: unicast to a configured client, broadcast otherwise."""
    if reply.message_type == DHCPNAK or message.broadcast or message.ciaddr == ZERO_ADDRESS:
        return BROADCAST_IP, CLIENT_PORT
    return str(message.ciaddr), CLIENT_PORT


class DHCPServer:
    """Binds the lease core to a UDP socket on the running event loop."""

    def __init__(self, config: ServerConfig, clock: Callable[[], float] = time.time):
        self.config = config
        self.leases = LeaseManager(config)
        self.dispatcher = Dispatcher(self.leases)
        self.clock = clock
        self.transport = None
        self._mac_buckets: Dict[bytes, Tuple[float, float]] = {}  # mac -> (tokens, last_ts)
        self._last_prune = float('-inf')
        self._done: Optional[asyncio.Future] = None

    def _allow_request(self, mac: bytes, now: float) -> bool:
        if len(self._mac_buckets) >= MAX_RATE_BUCKETS or now - self._last_prune >= BUCKET_PRUNE_INTERVAL:
            self._prune_buckets(now)
        tokens, last = self._mac_buckets.get(mac, (self.config.rate_limit_burst, now))
        tokens = min(self.config.rate_limit_burst, tokens + (now - last) * self.config.rate_limit_rps)
        if tokens < 1.0:
            self._mac_buckets[mac] = (tokens, now)
            return False
        self._mac_buckets[mac] = (tokens - 1.0, now)
        return True

    def _prune_buckets(self, now: float):
        # a bucket idle this long has refilled to the burst, same as no bucket
        idle = self.config.rate_limit_burst / self.config.rate_limit_rps
        for mac, (_, last) in list(self._mac_buckets.items()):
            if now - last >= idle:
                del self._mac_buckets[mac]
        while len(self._mac_buckets) >= MAX_RATE_BUCKETS:
            del self._mac_buckets[next(iter(self._mac_buckets))]
        self._last_prune = now

    def _admit(self, message: DHCPMessage, now: float) -> bool:
        if self._allow_request(message.chaddr, now):
            return True
        logger.info('Rate-limited DHCP packet from %s', message.mac)
        return False

    def process(self, data: bytes) -> Optional[Tuple[bytes, Tuple[str, int]]]:
        """Handle one datagram; return the encoded reply and its destination."""
        exchange = self.dispatcher.handle_datagram(data, self.clock(), admit=self._admit)
        if exchange is None:
            return None
        return exchange.payload, reply_destination(exchange.request, exchange.reply)

    def fail(self, exc: BaseException):
        if self._done is not None and not self._done.done():
            self._done.set_exception(exc)

    def stop(self):
        if self._done is not None and not self._done.done():
            self._done.set_result(None)

    def _make_socket(self) -> socket.socket:
        bind_ip, bind_port = self.config.listen_ip, self.config.listen_port
        try:
            if bind_port < 1024 and os.geteuid() != 0:
                logger.error('Insufficient privileges to bind to port %d. Run as root or use '
                             'CAP_NET_BIND_SERVICE, or for testing bind to a non-privileged port (e.g., 6767).',
                             bind_port)
                raise PermissionError(f'Cannot bind to privileged port {bind_port} without root')
        except AttributeError:
            # os.geteuid is missing on some platforms
            pass
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            if self.config.interface:
                # SO_BINDTODEVICE is Linux-specific
                so_bind = getattr(socket, 'SO_BINDTODEVICE', 25)
                sock.setsockopt(socket.SOL_SOCKET, so_bind, self.config.interface.encode() + b'\x00')
                logger.info('Bound DHCP socket to interface %s', self.config.interface)
            sock.bind((bind_ip, bind_port))
        except OSError as e:
            sock.close()
            logger.error('Failed to bind DHCP socket to %s:%d: %s', bind_ip, bind_port, e)
            raise
        logger.info('DHCP server bound to %s:%d', bind_ip, bind_port)
        return sock

    async def start(self):
        """Serve until stopped; socket errors end the loop with that exception."""
        loop = asyncio.get_running_loop()
        self._done = loop.create_future()
        sock = self._make_socket()
        transport, _ = await loop.create_datagram_endpoint(lambda: DHCPProtocol(self), sock=sock)
        self.transport = transport
        maintenance = self._start_maintenance()
        try:
            await self._done
        finally:
            if maintenance is not None:
                maintenance.cancel()
            transport.close()

    def _start_maintenance(self) -> Optional[asyncio.Task]:
        if not self.config.sweep_interval:
            return None
        task = asyncio.get_running_loop().create_task(self._maintenance_loop())
        task.add_done_callback(self._maintenance_done)
        return task

    def _maintenance_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, AssertionError):
            logger.critical('Lease table invariant violated during sweep: %s', exc)
        else:
            logger.error('Maintenance sweep failed: %r', exc)
        self.fail(exc)

    async def _maintenance_loop(self):
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            now = self.clock()
            self.leases.sweep(now)
            self._prune_buckets(now)


class DHCPProtocol(asyncio.DatagramProtocol):
    def __init__(self, server: DHCPServer):
        self.server = server
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport
        logger.info("DHCP server listening")

    def datagram_received(self, data: bytes, addr):
        try:
            result = self.server.process(data)
        except AssertionError as e:
            logger.critical('Lease table invariant broken: %s', e)
            self.server.fail(e)
            return
        except Exception as e:
            logger.exception('DHCP datagram from %s failed: %s', addr[0], e)
            return
        if result is None:
            return
        pkt, dest = result
        try:
            self.transport.sendto(pkt, dest)
        except OSError as e:
            logger.error('Failed to send DHCP reply to %s:%d: %s', dest[0], dest[1], e)
            self.server.fail(e)

    def error_received(self, exc):
        logger.error('DHCP socket error: %s', exc)
        self.server.fail(exc)

    def connection_lost(self, exc):
        if exc is not None:
            self.server.fail(exc)
        else:
            self.server.stop()
