"""Entry point for ``python -m home_vault``."""

import sys

from .cli.dispatcher import main

if __name__ == "__main__":
    sys.exit(main())
