#!/usr/bin/env python3
"""
Transaction History Entry Point

Starts the FastAPI server with the configured ledger store.
"""

import sys

from transaction_history.api import run_server
from transaction_history.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Transaction History service...")
    print(f"Ledger store: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        print("\nShutting down Transaction History service...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
