"""
Entry point for running the HTTP service from a source checkout.

``python main.py --port 9000`` behaves exactly like the installed
``http-service --port 9000`` console script.
"""

import sys

import http_service.command_line

if __name__ == "__main__":
    sys.exit(http_service.command_line.main())
