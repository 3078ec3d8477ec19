#!/usr/bin/env python3
"""
Gold Lending System Entry Point

Starts the FastAPI server on the configured host and port (default 8095).
"""

import sys

from gold_lending.config import get_config
from gold_lending.logging_config import setup_logging
from gold_lending.api import run_server


if __name__ == "__main__":
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format)

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down Gold Lending System...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
