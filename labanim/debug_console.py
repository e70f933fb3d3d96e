"""
DebugConsole - routes diagnostic messages to the ``labanim`` logger
"""
import logging

logger = logging.getLogger("labanim")


class DebugConsole:
    @staticmethod
    def log(message):
        """Debug-level message, hidden unless verbose logging is enabled"""
        logger.debug(message)

    @staticmethod
    def info(message):
        logger.info(message)

    @staticmethod
    def warning(message):
        logger.warning(message)

    @staticmethod
    def error(message):
        logger.error(message)
