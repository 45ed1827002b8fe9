import argparse
import asyncio
import logging
import signal
import sys

from amigate.errors import ConfigurationError
from amigate.gateway import Gateway
from amigate.settings import load_settings


async def main(path: str) -> None:
    logger = logging.getLogger('Gateway')
    gateway = Gateway(load_settings(path))
    stopped = asyncio.Event()
    loop = asyncio.get_running_loop()

    async def reload():
        try:
            await gateway.reload(load_settings(path))
        except ConfigurationError as e:
            logger.error(f"Reload rejected: {e}")

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopped.set)
    loop.add_signal_handler(signal.SIGHUP, lambda: loop.create_task(reload()))

    await gateway.start()
    await stopped.wait()
    await gateway.stop()


def cli() -> None:
    parser = argparse.ArgumentParser(prog='amigate', description='Routes Asterisk AMI events to files and databases')
    parser.add_argument('config', nargs='?', default='/etc/amigate/config.yaml')
    parser.add_argument('-v', '--verbose', action='store_true')
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    try:
        asyncio.run(main(args.config))
    except ConfigurationError as e:
        logging.getLogger('Gateway').error(f"Invalid configuration: {e}")
        sys.exit(2)


if __name__ == '__main__':
    cli()
