#!/usr/bin/env python3
"""Run the DCA sweep loop.

Usage:
    python scripts/run_scheduler.py [--interval SECONDS] [--iterations N] [--live]

Environment:
    DATABASE_URL - Required. The scheduler and the API share strategies through
                   this database; without one, use DCA_API_SCHEDULER=1 on the API.
    SIGNING_GATEWAY_URL - Required with --live.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Ensure imports work when invoked as a script
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from dcaguard.automation.orchestrator import main  # noqa: E402

if __name__ == "__main__":
    asyncio.run(main())
