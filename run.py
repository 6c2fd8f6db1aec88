#!/usr/bin/env python3
"""
Voucher Ledger Entry Point

Starts the FastAPI server on the configured host and port.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from voucher_ledger.api_modular import run_server
from voucher_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Voucher Ledger...")
    print(f"Local currency {config.local_currency}, reporting currency {config.reporting_currency}")
    print(f"Overdraft policy: {config.overdraft_policy}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Voucher Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
