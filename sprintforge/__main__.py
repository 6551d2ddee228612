"""
Entry point for running sprintforge as a module.

Usage:
    python -m sprintforge [args]

This is equivalent to the `sprintforge` console script.
"""

import sys

from sprintforge.cli import main

if __name__ == "__main__":
    sys.exit(main())
