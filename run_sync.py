"""Convenience launcher for the synchronizer.

Usage:
  python run_sync.py sync
  python run_sync.py sync-issue PROJ-123
"""

import sys

from jira_sync.cli import main

if __name__ == "__main__":
    sys.exit(main())
