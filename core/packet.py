import logging
import struct
from dataclasses import dataclass, field
from ipaddress import IPv4Address
from typing import Dict, Optional

from utils.config import ServerConfig

logger = logging.getLogger("dorad.packet")

# BOOTP op codes
BOOTREQUEST = 1
BOOTREPLY = 2

# DHCP message types (option 53)
DHCPDISCOVER = 1
DHCPOFFER = 2
DHCPREQUEST = 3
DHCPDECLINE = 4
DHCPACK = 5
DHCPNAK = 6
DHCPRELEASE = 7
DHCPINFORM = 8

MESSAGE_TYPE_NAMES = {
    DHCPDISCOVER: 'DISCOVER',
    DHCPOFFER: 'OFFER',
    DHCPREQUEST: 'REQUEST',
    DHCPDECLINE: 'DECLINE',
    DHCPACK: 'ACK',
    DHCPNAK: 'NAK',
    DHCPRELEASE: 'RELEASE',
    DHCPINFORM: 'INFORM',
}

MAGIC_COOKIE = b"\x63\x82\x53\x63"

OPTION_PAD = 0
OPTION_SUBNET_MASK = 1
OPTION_ROUTER = 3
OPTION_DNS = 6
OPTION_REQUESTED_IP = 50
OPTION_LEASE_TIME = 51
OPTION_MESSAGE_TYPE = 53
OPTION_SERVER_ID = 54
OPTION_END = 255

FLAG_BROADCAST = 0x8000

# op, htype, hlen, hops, xid, secs, flags, ciaddr, yiaddr, siaddr, giaddr, chaddr, sname, file
BOOTP_HEADER = struct.Struct('!BBBBIHH4s4s4s4s16s64s128s')
HEADER_LEN = BOOTP_HEADER.size  # 236
OPTIONS_OFFSET = HEADER_LEN + len(MAGIC_COOKIE)  # 240
MIN_PACKET_SIZE = 300

ZERO_ADDRESS = IPv4Address('0.0.0.0')


class PacketError(ValueError):
    """Raised when a datagram cannot be decoded into a DHCP message."""


class Malformed(PacketError):
    pass


class BadCookie(PacketError):
    pass


class MissingMessageType(PacketError):
    pass


def format_mac(chaddr: bytes) -> str:
    return ':'.join('{:02x}'.format(b) for b in chaddr)


@dataclass
class DHCPMessage:
    """A decoded BOOTP/DHCP datagram.

    `chaddr` holds only the significant `hlen` bytes of the hardware
    address field. `options` keeps every option found, including tags the
    server does not interpret.
    """
    op: int
    htype: int
    hlen: int
    hops: int
    xid: int
    secs: int
    flags: int
    ciaddr: IPv4Address
    yiaddr: IPv4Address
    siaddr: IPv4Address
    giaddr: IPv4Address
    chaddr: bytes
    message_type: int
    options: Dict[int, bytes] = field(default_factory=dict)
    requested_ip: Optional[IPv4Address] = None
    server_id: Optional[IPv4Address] = None

    @property
    def mac(self) -> str:
        return format_mac(self.chaddr)

    @property
    def broadcast(self) -> bool:
        return bool(self.flags & FLAG_BROADCAST)

    @property
    def type_name(self) -> str:
        return MESSAGE_TYPE_NAMES.get(self.message_type, str(self.message_type))


@dataclass
class DHCPReply:
    """A server response, ready for `encode`."""
    message_type: int
    xid: int
    chaddr: bytes
    htype: int = 1
    hlen: int = 6
    flags: int = 0
    ciaddr: IPv4Address = ZERO_ADDRESS
    yiaddr: IPv4Address = ZERO_ADDRESS
    giaddr: IPv4Address = ZERO_ADDRESS

    @classmethod
    def for_request(cls, request: DHCPMessage, message_type: int,
                    yiaddr: IPv4Address = ZERO_ADDRESS,
                    ciaddr: IPv4Address = ZERO_ADDRESS) -> 'DHCPReply':
        return cls(
            message_type=message_type,
            xid=request.xid,
            chaddr=request.chaddr,
            htype=request.htype,
            hlen=request.hlen,
            flags=request.flags,
            ciaddr=ciaddr,
            yiaddr=yiaddr,
            giaddr=request.giaddr,
        )

    @property
    def type_name(self) -> str:
        return MESSAGE_TYPE_NAMES.get(self.message_type, str(self.message_type))


def parse_options(data: bytes) -> Dict[int, bytes]:
    """Parse a (tag, length, value) options area.

    Parsing stops at the end option or at a truncated trailing option.
    A tag that appears more than once has its values concatenated
    (RFC 3396).
    """
    opts: Dict[int, bytes] = {}
    i = 0
    length = len(data)
    while i < length:
        code = data[i]
        i += 1
        if code == OPTION_PAD:
            continue
        if code == OPTION_END:
            break
        if i >= length:
            logger.debug('Option %d truncated before its length byte', code)
            break
        l = data[i]
        i += 1
        if i + l > length:
            logger.debug('Option %d claims %d bytes, only %d left', code, l, length - i)
            break
        opts[code] = opts.get(code, b'') + bytes(data[i:i+l])
        i += l
    return opts


def build_options(opts: Dict[int, bytes]) -> bytes:
    """Serialize options in insertion order and append the end marker."""
    parts = bytearray()
    for code, val in opts.items():
        if code in (OPTION_PAD, OPTION_END) or val is None:
            continue
        if len(val) > 255:
            raise ValueError('option %d is %d bytes long, the limit is 255' % (code, len(val)))
        parts.append(code)
        parts.append(len(val))
        parts.extend(val)
    parts.append(OPTION_END)
    return bytes(parts)


def _address_option(opts: Dict[int, bytes], code: int) -> Optional[IPv4Address]:
    raw = opts.get(code)
    if raw is None:
        return None
    if len(raw) != 4:
        logger.debug('Ignoring option %d with length %d', code, len(raw))
        return None
    return IPv4Address(raw)


def decode(data: bytes) -> DHCPMessage:
    """Decode a raw datagram.

    Raises:
        Malformed: shorter than header + cookie, or a bad hardware length.
        BadCookie: the magic cookie is not 0x63825363.
        MissingMessageType: option 53 is absent or not one byte long.
    """
    if len(data) < OPTIONS_OFFSET:
        raise Malformed('packet is %d bytes, need at least %d' % (len(data), OPTIONS_OFFSET))
    (op, htype, hlen, hops, xid, secs, flags,
     ciaddr, yiaddr, siaddr, giaddr, chaddr, _sname, _file) = BOOTP_HEADER.unpack_from(data)
    if data[HEADER_LEN:OPTIONS_OFFSET] != MAGIC_COOKIE:
        raise BadCookie('magic cookie is %s' % data[HEADER_LEN:OPTIONS_OFFSET].hex())
    if not 0 < hlen <= len(chaddr):
        raise Malformed('hardware address length %d out of range' % hlen)

    opts = parse_options(data[OPTIONS_OFFSET:])
    mt = opts.get(OPTION_MESSAGE_TYPE)
    if mt is None or len(mt) != 1:
        raise MissingMessageType('no usable message type option')

    return DHCPMessage(
        op=op,
        htype=htype,
        hlen=hlen,
        hops=hops,
        xid=xid,
        secs=secs,
        flags=flags,
        ciaddr=IPv4Address(ciaddr),
        yiaddr=IPv4Address(yiaddr),
        siaddr=IPv4Address(siaddr),
        giaddr=IPv4Address(giaddr),
        chaddr=chaddr[:hlen],
        message_type=mt[0],
        options=opts,
        requested_ip=_address_option(opts, OPTION_REQUESTED_IP),
        server_id=_address_option(opts, OPTION_SERVER_ID),
    )


def encode(reply: DHCPReply, config: ServerConfig) -> bytes:
    """Build the wire form of a reply.

    OFFER and ACK carry the full configuration; NAK carries only the
    message type and server identifier. The result is zero-padded to the
    BOOTP minimum of 300 bytes.
    """
    server_id = config.server_identifier
    # RFC 2131 table 3: siaddr is zero in a NAK
    siaddr = ZERO_ADDRESS if reply.message_type == DHCPNAK else server_id
    header = BOOTP_HEADER.pack(
        BOOTREPLY, reply.htype, reply.hlen, 0,
        reply.xid, 0, reply.flags,
        reply.ciaddr.packed,
        reply.yiaddr.packed,
        siaddr.packed,
        reply.giaddr.packed,
        reply.chaddr.ljust(16, b'\x00')[:16],
        b'\x00' * 64,
        b'\x00' * 128,
    )
    opts: Dict[int, bytes] = {OPTION_MESSAGE_TYPE: bytes([reply.message_type])}
    if reply.message_type != DHCPNAK:
        opts[OPTION_LEASE_TIME] = struct.pack('!I', config.lease_duration)
        opts[OPTION_SUBNET_MASK] = config.subnet_mask.packed
        opts[OPTION_ROUTER] = config.router.packed
        if config.dns_servers:
            opts[OPTION_DNS] = b''.join(d.packed for d in config.dns_servers)
    opts[OPTION_SERVER_ID] = server_id.packed

    pkt = header + MAGIC_COOKIE + build_options(opts)
    if len(pkt) < MIN_PACKET_SIZE:
        pkt += b'\x00' * (MIN_PACKET_SIZE - len(pkt))
    return pkt
