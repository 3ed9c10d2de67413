"""
Entry point for running mediashrink as a module: python -m mediashrink
"""

import sys

from mediashrink.cli import main

if __name__ == "__main__":
    sys.exit(main())
