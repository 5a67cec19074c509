import os
import configparser
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv4Network
from typing import Iterator, Optional, Tuple

DEFAULT_CONFIG_PATH = 'config/dorad.conf'

# option 6 carries at most 255 bytes of addresses
MAX_DNS_SERVERS = 63


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class ServerConfig:
    """Immutable server settings.

    The pool is the inclusive range `pool_start`..`pool_end`. When
    `server_ip` is unset the router address is used as the server
    identifier.
    """
    pool_start: IPv4Address = IPv4Address('192.168.1.100')
    pool_end: IPv4Address = IPv4Address('192.168.1.199')
    subnet_mask: IPv4Address = IPv4Address('255.255.255.0')
    router: IPv4Address = IPv4Address('192.168.1.1')
    dns_servers: Tuple[IPv4Address, ...] = field(default=(IPv4Address('8.8.8.8'),))
    lease_duration: int = 86400
    server_ip: Optional[IPv4Address] = None
    # transport settings
    listen_ip: str = '0.0.0.0'
    listen_port: int = 67
    interface: Optional[str] = None
    sweep_interval: int = 60
    rate_limit_rps: float = 5.0
    rate_limit_burst: float = 20.0
    decline_hold: int = 600
    verbose: bool = False

    def __post_init__(self):
        if self.pool_start > self.pool_end:
            raise ConfigError('pool start %s is above pool end %s' % (self.pool_start, self.pool_end))
        try:
            network = IPv4Network('%s/%s' % (self.router, self.subnet_mask), strict=False)
        except ValueError as e:
            raise ConfigError('invalid subnet mask %s: %s' % (self.subnet_mask, e)) from e
        if self.pool_start not in network or self.pool_end not in network:
            raise ConfigError('pool %s-%s is outside subnet %s' % (self.pool_start, self.pool_end, network))
        if self.server_identifier in (network.network_address, network.broadcast_address):
            raise ConfigError('server identifier %s is not a host address' % self.server_identifier)
        if not 0 < self.lease_duration <= 0xFFFFFFFF:
            raise ConfigError('lease duration must be between 1 and 4294967295 seconds')
        if len(self.dns_servers) > MAX_DNS_SERVERS:
            raise ConfigError('at most %d DNS servers fit in one option' % MAX_DNS_SERVERS)
        if self.sweep_interval < 0 or self.decline_hold < 0:
            raise ConfigError('sweep_interval and decline_hold must not be negative')
        if self.rate_limit_rps <= 0 or self.rate_limit_burst < 1:
            raise ConfigError('rate_limit_rps must be positive and rate_limit_burst at least 1')

    @property
    def server_identifier(self) -> IPv4Address:
        return self.server_ip if self.server_ip is not None else self.router

    @property
    def pool_size(self) -> int:
        return int(self.pool_end) - int(self.pool_start) + 1

    def pool_addresses(self) -> Iterator[IPv4Address]:
        for value in range(int(self.pool_start), int(self.pool_end) + 1):
            yield IPv4Address(value)


def _address(value: str, name: str) -> IPv4Address:
    try:
        return IPv4Address(value.strip())
    except ValueError as e:
        raise ConfigError('%s: %s' % (name, e)) from e


def load_config(path=DEFAULT_CONFIG_PATH) -> ServerConfig:
    """Read an INI file into a ServerConfig. A missing file gives the defaults."""
    if not os.path.exists(path):
        return ServerConfig()
    config = configparser.ConfigParser()
    config.read(path)

    pool_start = _address(config.get('dhcp', 'start_ip', fallback='192.168.1.100'), 'start_ip')
    pool_end = _address(config.get('dhcp', 'end_ip', fallback='192.168.1.199'), 'end_ip')
    netmask = _address(config.get('dhcp', 'netmask', fallback='255.255.255.0'), 'netmask')
    router = _address(config.get('dhcp', 'router', fallback='192.168.1.1'), 'router')
    dns_raw = config.get('dhcp', 'dns_servers', fallback='8.8.8.8')
    dns_servers = tuple(_address(d, 'dns_servers') for d in dns_raw.split(',') if d.strip())
    server_raw = config.get('dhcp', 'server_ip', fallback='').strip()
    server_ip = _address(server_raw, 'server_ip') if server_raw else None
    interface = config.get('interface', 'device', fallback='').strip() or None

    try:
        lease_duration = config.getint('dhcp', 'lease_ttl', fallback=86400)
        sweep_interval = config.getint('dhcp', 'sweep_interval', fallback=60)
        decline_hold = config.getint('dhcp', 'decline_hold', fallback=600)
        rate_limit_rps = config.getfloat('dhcp', 'rate_limit_rps', fallback=5.0)
        rate_limit_burst = config.getfloat('dhcp', 'rate_limit_burst', fallback=20.0)
        listen_port = config.getint('interface', 'listen_port', fallback=67)
        verbose = config.getboolean('logging', 'verbose', fallback=False)
    except ValueError as e:
        raise ConfigError(str(e)) from e

    return ServerConfig(
        pool_start=pool_start,
        pool_end=pool_end,
        subnet_mask=netmask,
        router=router,
        dns_servers=dns_servers,
        lease_duration=lease_duration,
        server_ip=server_ip,
        listen_ip=config.get('interface', 'listen_ip', fallback='0.0.0.0'),
        listen_port=listen_port,
        interface=interface,
        sweep_interval=sweep_interval,
        rate_limit_rps=rate_limit_rps,
        rate_limit_burst=rate_limit_burst,
        decline_hold=decline_hold,
        verbose=verbose,
    )
