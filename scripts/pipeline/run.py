#!/usr/bin/env python3
"""Run the full pipeline once: seed (if needed), collect, analyze, extended, aggregate.

Usage:
    python scripts/pipeline/run.py [--extended-analysis] [--force-reanalysis] [--analyze-comments] [--log-dir logs]

Requires env vars: REDDIT_CLIENT_ID, REDDIT_CLIENT_SECRET, REDDIT_REFRESH_TOKEN
(or REDDIT_USERNAME + REDDIT_PASSWORD), OPENAI_API_KEY, DB_PATH.
Values in the project's .env file are loaded first.
"""

import os
import sys

# Add project root to path so reddit_pulse.* imports work
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, PROJECT_ROOT)

from reddit_pulse.config import load_dotenv  # noqa: E402
from reddit_pulse.pipeline import main  # noqa: E402


if __name__ == "__main__":
    load_dotenv(os.path.join(PROJECT_ROOT, ".env"))
    sys.exit(main())
