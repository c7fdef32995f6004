"""Main entry point for running edgeflow as a module."""

import sys

if __name__ == "__main__":
    from edgeflow.cli.app import main
    sys.exit(main())
