"""CLI entry point for fleetcoord."""

import sys

from fleetcoord.cli import main

if __name__ == "__main__":
    sys.exit(main())
