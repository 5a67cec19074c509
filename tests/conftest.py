import struct
from ipaddress import IPv4Address

import pytest

from core.dispatcher import Dispatcher
from core.leases import LeaseManager
from core.packet import (
    BOOTP_HEADER,
    BOOTREQUEST,
    MAGIC_COOKIE,
    OPTION_MESSAGE_TYPE,
    OPTION_REQUESTED_IP,
    OPTION_SERVER_ID,
    build_options,
)
from utils.config import ServerConfig

MAC1 = bytes.fromhex('aabbccddee01')
MAC2 = bytes.fromhex('aabbccddee02')
MAC3 = bytes.fromhex('aabbccddee03')


def make_packet(msg_type, chaddr=MAC1, xid=0x12345678, ciaddr='0.0.0.0', flags=0,
                requested=None, server_id=None, extra=None, op=BOOTREQUEST):
    header = BOOTP_HEADER.pack(
        op, 1, len(chaddr), 0, xid, 0, flags,
        IPv4Address(ciaddr).packed, b'\x00' * 4, b'\x00' * 4, b'\x00' * 4,
        chaddr.ljust(16, b'\x00'), b'\x00' * 64, b'\x00' * 128,
    )
    opts = {}
    if msg_type is not None:
        opts[OPTION_MESSAGE_TYPE] = bytes([msg_type])
    if requested is not None:
        opts[OPTION_REQUESTED_IP] = IPv4Address(requested).packed
    if server_id is not None:
        opts[OPTION_SERVER_ID] = IPv4Address(server_id).packed
    opts.update(extra or {})
    return header + MAGIC_COOKIE + build_options(opts)


@pytest.fixture
def packet():
    return make_packet


@pytest.fixture
def config():
    return ServerConfig(
        pool_start=IPv4Address('192.168.1.100'),
        pool_end=IPv4Address('192.168.1.199'),
        subnet_mask=IPv4Address('255.255.255.0'),
        router=IPv4Address('192.168.1.1'),
        dns_servers=(IPv4Address('8.8.8.8'),),
        lease_duration=86400,
    )


@pytest.fixture
def small_config():
    return ServerConfig(
        pool_start=IPv4Address('10.0.0.10'),
        pool_end=IPv4Address('10.0.0.12'),
        subnet_mask=IPv4Address('255.255.255.0'),
        router=IPv4Address('10.0.0.1'),
        dns_servers=(IPv4Address('10.0.0.53'), IPv4Address('1.1.1.1')),
        lease_duration=100,
        decline_hold=50,
    )


@pytest.fixture
def manager(config):
    return LeaseManager(config)


@pytest.fixture
def small_manager(small_config):
    return LeaseManager(small_config)


@pytest.fixture
def dispatcher(manager):
    return Dispatcher(manager)


def unpack_lease_time(value: bytes) -> int:
    return struct.unpack('!I', value)[0]
