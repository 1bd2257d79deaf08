#!/usr/bin/env python3
"""Entry point for ``python -m agentsync``.

Usage:
    python -m agentsync init-db
    python -m agentsync claim worker-1 --target reviewer
    python -m agentsync serve --port 8000
"""

from agentsync.cli.main import main

if __name__ == "__main__":
    main()
