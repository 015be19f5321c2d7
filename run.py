#!/usr/bin/env python3
"""
Loan Engine Entry Point

Starts the FastAPI server with settings from LOAN_ENGINE_* environment
variables (or .env).
"""

import sys

from loan_engine.api import run_server
from loan_engine.config import get_config
from loan_engine.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, config.log_format, log_file=config.log_file)

    print("Starting Loan Engine...")
    print(f"Storage: {config.storage_backend} ({config.database_path})")
    print("All financial calculations use Decimal precision")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down Loan Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
