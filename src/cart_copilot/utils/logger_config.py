"""
Logging setup for Cart Copilot
Format: YYYY-MM-DD HH:MM:SS - [Module] - [Source] - Description
"""

import logging
from datetime import datetime

from cart_copilot.core.config import CopilotConfig


class CopilotFormatter(logging.Formatter):
    """Formatter that adds module and source context taken from `extra`"""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record):
        module = getattr(record, 'module_name', 'SYSTEM')
        source = getattr(record, 'source', 'CORE')
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')

        formatted = f"{timestamp} - [{module}] - [{source}] - {record.getMessage()}"
        if record.exc_info:
            formatted = f"{formatted}\n{self.formatException(record.exc_info)}"

        if not self.use_color:
            return formatted
        color = self.COLORS.get(record.levelname, '')
        return f"{color}{formatted}{self.RESET}"


def setup_logger(name='cart_copilot', level=None, use_color=True):
    """Configure the package logger once; later calls return it unchanged"""
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    level = level or CopilotConfig.get_log_level()
    logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(CopilotFormatter(use_color=use_color))

    logger.addHandler(console_handler)
    logger.propagate = False

    return logger


def log(logger, level, message, module='SYSTEM', source='CORE'):
    """Log with module and source context"""
    extra = {'module_name': module, 'source': source}
    log_method = getattr(logger, level, None)
    if log_method is None:
        raise ValueError(f"Unknown log level: {level}")
    log_method(message, extra=extra)
