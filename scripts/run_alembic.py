#!/usr/bin/env python3
"""
Runs alembic against the configured database.

    python scripts/run_alembic.py            # upgrade head
    python scripts/run_alembic.py downgrade -1
"""
import os
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)

from alembic.config import main

if __name__ == '__main__':
    argv = sys.argv[1:] or ["upgrade", "head"]
    sys.exit(main(argv=["-c", os.path.join(ROOT, "alembic.ini"), *argv]))
