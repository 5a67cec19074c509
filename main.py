from utils.config import DEFAULT_CONFIG_PATH, ConfigError, load_config
import argparse
import asyncio
import dataclasses
import logging
import sys
from core.server import DHCPServer


def main(argv=None):
    parser = argparse.ArgumentParser(description="dorad DHCPv4 server")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to the INI configuration file")
    parser.add_argument("--listen-ip", help="Address to bind (overrides the config file)")
    parser.add_argument("--listen-port", type=int, help="UDP port to bind (overrides the config file)")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        overrides = {}
        if args.listen_ip:
            overrides['listen_ip'] = args.listen_ip
        if args.listen_port is not None:
            overrides['listen_port'] = args.listen_port
        if overrides:
            config = dataclasses.replace(config, **overrides)
    except ConfigError as e:
        print(f"Invalid configuration in {args.config}: {e}", file=sys.stderr)
        return 2

    verbose = args.verbose or config.verbose
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO,
                        format='[%(levelname)s] %(message)s')
    logging.info("Configuration loaded successfully:")
    for key, value in dataclasses.asdict(config).items():
        logging.info(f"{key}: {value}")

    server = DHCPServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logging.info("Shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
