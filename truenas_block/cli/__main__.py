"""
Entry point for running CLI as module: python -m truenas_block.cli
"""

import sys

from truenas_block.cli.cli import main

if __name__ == "__main__":
    sys.exit(main())
