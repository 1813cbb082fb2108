"""Test configuration: put the repo root on sys.path.

Every test builds its own logger and guard components; nothing here is
shared global state.
"""

import os
import sys

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
