import signal
import sys

import biblesyncd
from biblesyncd import config as biblesyncd_config
from biblesyncd import logging
from biblesyncd.server import run_server
from biblesyncd.sync_app import SyncApp

logger = logging.get_logger("biblesyncd")


def main():
    logger.info(
        "biblesyncd {}".format(biblesyncd._get_version())
    )

    config = biblesyncd_config.load_from_file(sys.argv)
    biblesyncd_config.load_from_env(config)

    app = SyncApp(config)

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}. Shutting down...")
        sys.exit(0)

    signal.signal(signal.SIGTERM, signal_handler)

    try:
        run_server(app, config["host"], int(config["port"]))
    except KeyboardInterrupt:
        logger.info("Received KeyboardInterrupt. Shutting down gracefully...")


if __name__ == "__main__":
    main()
