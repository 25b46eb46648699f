"""
Logging setup for amplicon_tools scripts.
"""

import logging

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(log_file=None, log_level=logging.INFO, name='amplicon_tools'):
    """
    Set up the package logger with a console handler and an optional file handler.

    Library modules log through child loggers (``amplicon_tools.rarefaction``
    and so on), so configuring the package logger covers all of them.
    """
    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    # Calling twice should not duplicate output
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
