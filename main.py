"""
Entrypoint: load config, init logging, build the fetcher, serve the download endpoint
"""

import logging
import sys

import structlog
import uvicorn
from dotenv import load_dotenv

from spider.config import Config
from spider.fetcher import create_fetcher
from spider.server import create_app


def setup_logging(log_config: dict):
    """Route stdlib and structlog loggers through one JSON-rendering stdout handler."""
    logging.basicConfig(
        format=log_config.get('format', '%(message)s'),
        stream=sys.stdout,
        level=getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main():
    """Initialize dependencies and start the download server"""
    load_dotenv()
    config = Config()
    setup_logging(config.logging)
    logger = structlog.get_logger(__name__)

    fetcher = create_fetcher(config.fetcher)
    if fetcher is None:
        logger.error("fetcher_init_failed", fetcher_config=config.fetcher)
        sys.exit(1)

    host = config.server.get('host', '0.0.0.0')
    port = int(config.server.get('port', 8088))
    logger.info("start_download_server", host=host, port=port)

    try:
        uvicorn.run(create_app(fetcher), host=host, port=port, log_config=None)
    finally:
        fetcher.transport.close()


if __name__ == "__main__":
    main()
