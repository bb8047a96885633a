import logging, json, os
from logging.handlers import RotatingFileHandler
from contextvars import ContextVar

# Correlation id for the current refresh cycle / API request
CORRELATION_ID_CTX: ContextVar[str | None] = ContextVar('correlation_id', default=None)

LOG_DIR = os.environ.get('LOG_DIR', 'logs')
LOG_FILE = os.path.join(LOG_DIR, 'market_pipeline.log')

# keys LogRecord always carries; anything else came in through extra={...}
_RESERVED = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime', 'correlation_id'}


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        # Attach even if None for uniformity
        record.correlation_id = CORRELATION_ID_CTX.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        base = {
            'ts': self.formatTime(record, datefmt='%Y-%m-%dT%H:%M:%S'),
            'level': record.levelname,
            'msg': record.getMessage(),
            'logger': record.name,
            'correlation_id': getattr(record, 'correlation_id', None),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and key not in base:
                base[key] = value
        if record.exc_info:
            base['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


def setup_logging(level: str | None = None, log_to_file: bool | None = None):
    level = (level or os.environ.get('LOG_LEVEL', 'INFO')).upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    # Clear existing handlers to avoid duplicate logs in reloads
    root.handlers = []
    use_json = os.environ.get('LOG_FORMAT', '').lower() == 'json'
    if use_json:
        fmt = JsonFormatter()
    else:
        fmt = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(correlation_id)s - %(message)s')
    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    ch.addFilter(CorrelationIdFilter())
    root.addHandler(ch)
    if log_to_file is None:
        log_to_file = os.environ.get('LOG_TO_FILE', '').lower() in {'1', 'true', 'yes'}
    if log_to_file:
        # Rotating file handler (5 MB, keep 3 backups)
        try:
            os.makedirs(LOG_DIR, exist_ok=True)
            fh = RotatingFileHandler(LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3)
            fh.setFormatter(fmt)
            fh.addFilter(CorrelationIdFilter())
            root.addHandler(fh)
        except OSError:
            root.warning('Could not attach rotating file handler; continuing with console only')
    # Set specific log levels for noisy libraries
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)


def log_config(config):
    """Log current configuration"""
    logging.info("=== Market pipeline configuration ===")
    for key, value in config.model_dump().items():
        logging.info(f"{key}: {value}")
    logging.info("=====================================")
