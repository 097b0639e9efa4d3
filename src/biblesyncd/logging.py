import logging as stdlib_logging


def get_logger(name: str):
    # Set up basic configuration
    stdlib_logging.basicConfig(
        level=stdlib_logging.INFO, format="[%(asctime)s]:%(levelname)s:%(name)s:%(message)s"
    )

    logger = stdlib_logging.getLogger(name)

    # Client timers fire often, keep them quiet unless something breaks
    if 'scheduler' in name:
        logger.setLevel(stdlib_logging.WARNING)
    elif 'sync' in name or 'engine' in name:
        logger.setLevel(stdlib_logging.INFO)

    return logger
