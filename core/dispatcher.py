import logging
from typing import Callable, NamedTuple, Optional

from core.leases import LeaseManager, LeaseMismatch, PoolExhausted, UnknownLease
from core.packet import (
    BOOTREQUEST,
    DHCPACK,
    DHCPDECLINE,
    DHCPDISCOVER,
    DHCPMessage,
    DHCPNAK,
    DHCPOFFER,
    DHCPRELEASE,
    DHCPReply,
    DHCPREQUEST,
    PacketError,
    ZERO_ADDRESS,
    decode,
    encode,
)

logger = logging.getLogger("dorad.dispatcher")


class Exchange(NamedTuple):
    request: DHCPMessage
    reply: DHCPReply
    payload: bytes


class Dispatcher:
    """Drives the DISCOVER/OFFER/REQUEST/ACK exchange.

    Each message is handled on its own; the only state carried between
    messages is the lease table. Handlers return the reply to send, or
    None when the message gets no answer.
    """

    def __init__(self, leases: LeaseManager):
        self.leases = leases
        self.config = leases.config
        self._handlers = {
            DHCPDISCOVER: self._handle_discover,
            DHCPREQUEST: self._handle_request,
            DHCPDECLINE: self._handle_decline,
            DHCPRELEASE: self._handle_release,
        }

    def handle_datagram(self, data: bytes, now: float,
                        admit: Optional[Callable[[DHCPMessage, float], bool]] = None) -> Optional[Exchange]:
        """Decode, dispatch and encode one datagram.

        `admit` is consulted after decoding; a False answer drops the
        message before it reaches the lease table. Returns None when
        nothing is to be sent.
        """
        try:
            message = decode(data)
        except PacketError as e:
            logger.debug('Dropping %s: %s', type(e).__name__, e)
            return None
        if admit is not None and not admit(message, now):
            return None
        reply = self.handle(message, now)
        if reply is None:
            return None
        return Exchange(message, reply, encode(reply, self.config))

    def handle(self, message: DHCPMessage, now: float) -> Optional[DHCPReply]:
        if message.op != BOOTREQUEST:
            logger.debug('Ignoring BOOTP op %d from %s', message.op, message.mac)
            return None
        handler = self._handlers.get(message.message_type)
        if handler is None:
            logger.debug('Ignoring %s from %s', message.type_name, message.mac)
            return None
        return handler(message, now)

    def _handle_discover(self, message: DHCPMessage, now: float) -> Optional[DHCPReply]:
        try:
            address = self.leases.allocate(message.chaddr, now)
        except PoolExhausted:
            logger.warning('Pool exhausted; no OFFER for %s (xid=%#010x)', message.mac, message.xid)
            return None
        logger.info('Offering %s to %s (xid=%#010x)', address, message.mac, message.xid)
        return DHCPReply.for_request(message, DHCPOFFER, yiaddr=address)

    def _handle_request(self, message: DHCPMessage, now: float) -> Optional[DHCPReply]:
        if message.server_id is not None and message.server_id != self.config.server_identifier:
            # the client accepted another server's offer
            withdrawn = self.leases.withdraw_offer(message.chaddr)
            logger.debug('REQUEST from %s is for server %s; withdrew offer %s',
                         message.mac, message.server_id, withdrawn)
            return None

        requested = message.requested_ip
        if requested is None and message.ciaddr != ZERO_ADDRESS:
            requested = message.ciaddr
        try:
            address = self.leases.confirm(message.chaddr, requested, now)
        except (UnknownLease, LeaseMismatch) as e:
            logger.info('NAK to %s: %s', message.mac, e)
            return DHCPReply.for_request(message, DHCPNAK)
        logger.info('ACK %s to %s (xid=%#010x)', address, message.mac, message.xid)
        return DHCPReply.for_request(message, DHCPACK, yiaddr=address, ciaddr=message.ciaddr)

    def _handle_decline(self, message: DHCPMessage, now: float) -> None:
        if self.leases.decline(message.chaddr, message.requested_ip, now):
            logger.warning('%s reports %s already in use', message.mac, message.requested_ip)
        return None

    def _handle_release(self, message: DHCPMessage, now: float) -> None:
        released = self.leases.release_client(message.chaddr, message.ciaddr)
        if released is None:
            logger.debug('RELEASE of %s from %s does not match a lease', message.ciaddr, message.mac)
            return None
        logger.info('Released %s from %s', released, message.mac)
        return None
