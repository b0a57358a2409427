#!/usr/bin/env python3
"""Run the refresh-credential sweep from a source checkout.

Same as the installed ``tutorbridge-sweep`` command; see
``tutorbridge/maintenance.py`` for options.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from tutorbridge.maintenance import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
