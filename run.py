#!/usr/bin/env python3
"""
SFD Lending Entry Point

Starts the FastAPI server (port 8090 unless SFD_LENDING_API_PORT says otherwise).
"""

import sys

from sfd_lending.api import run_server


if __name__ == "__main__":
    print("Starting SFD lending core...")
    print("All amounts use Decimal precision (FCFA, no minor unit)")
    print("Documentation at: /docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down SFD lending core...")
    except OSError as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
