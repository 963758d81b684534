"""
Component analytics CLI entry point.
"""

import sys

from component_analytics.cli import main

if __name__ == "__main__":
    sys.exit(main())
