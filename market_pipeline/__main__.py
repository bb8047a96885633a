#!/usr/bin/env python3
"""Run the market pipeline API: ``python -m market_pipeline``."""

import argparse
import os

import uvicorn

from .api import create_app
from .config import load_config
from .logging_config import log_config, setup_logging


def main(argv=None):
    parser = argparse.ArgumentParser(description="Crypto market dashboard data pipeline")
    parser.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8001")))
    parser.add_argument("--config", default=None, help="YAML file with pipeline settings")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    config = load_config(args.config)
    log_config(config)
    uvicorn.run(create_app(config=config), host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
