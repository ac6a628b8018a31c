"""Module entrypoint: ``python -m nodelab``."""

from __future__ import annotations

import sys

from nodelab import cli

if __name__ == "__main__":
    sys.exit(cli.main())
