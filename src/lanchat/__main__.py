"""
LanChat - Allow running as ``python -m lanchat``.
"""

import sys

from .main import main

if __name__ == "__main__":
    sys.exit(main())
