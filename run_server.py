#!/usr/bin/env python3
"""Starts the CoS portal HTTP service."""

import argparse
import logging
from pathlib import Path

import uvicorn

from cos_portal.api import create_app
from cos_portal.config import load_config, setup_logging


def main():
    parser = argparse.ArgumentParser(description="CoS portal HTTP service")
    parser.add_argument("--config", type=Path, default=None, help="Path to the configuration file.")
    parser.add_argument("--host", help="Override server.host from the config file.")
    parser.add_argument("--port", type=int, help="Override server.port from the config file.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose DEBUG logging.")
    args = parser.parse_args()

    config = load_config(args.config)
    setup_logging("DEBUG" if args.verbose else config.get("log_level", "INFO"))

    server_config = config.get("server", {})
    host = args.host or server_config.get("host", "0.0.0.0")
    port = args.port or int(server_config.get("port", 8000))
    logging.getLogger(__name__).info(f"Serving CoS portal on {host}:{port}")

    uvicorn.run(create_app(config), host=host, port=port, log_level=config.get("log_level", "INFO").lower())


if __name__ == "__main__":
    from dotenv import load_dotenv
    load_dotenv()
    main()
