#!/usr/bin/env python3
"""
Entry point for the tradeloop tick engine.
Loads dotenv files before the CLI reads its configuration.
"""
from tradeloop.config.dotenv_loader import load_dotenv_files

# Explicit dotenv loading for local/dev. In prod this is a no-op.
load_dotenv_files()

from tradeloop.cli import app

if __name__ == "__main__":
    app()
