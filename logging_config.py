"""
Logging setup for the back-office app.
Call setup_logging() once at startup.
"""
import logging
import logging.handlers
import os
from datetime import datetime

LOG_DIR = os.environ.get('LOG_DIR', os.path.join(os.path.dirname(os.path.abspath(__file__)), 'data', 'logs'))


class ConsoleFormatter(logging.Formatter):
    COLORS = {
        'DEBUG': '\033[36m', 'INFO': '\033[32m',
        'WARNING': '\033[33m', 'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        ts = datetime.now().strftime('%H:%M:%S')
        line = f'{color}{ts} [{record.levelname[0]}] {record.name}: {record.getMessage()}{self.RESET}'
        if record.exc_info and record.exc_info[0]:
            line += '\n' + self.formatException(record.exc_info)
        return line


def setup_logging(level=None, log_to_file=True):
    """
    Configure the root logger.

    Args:
        level: Override log level (default: LOG_LEVEL env or INFO)
        log_to_file: Also write a rotating log file under LOG_DIR
    """
    if level is None:
        level = os.environ.get('LOG_LEVEL', 'INFO').upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    if log_to_file:
        try:
            os.makedirs(LOG_DIR, exist_ok=True)
            fh = logging.handlers.RotatingFileHandler(
                os.path.join(LOG_DIR, 'backoffice.log'),
                maxBytes=5_000_000, backupCount=5,
            )
            fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
            root.addHandler(fh)
        except OSError as e:
            root.warning('File logging disabled: %s', e)

    for name in ('werkzeug', 'reportlab', 'pdfminer'):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info('Logging initialized at %s', level)
