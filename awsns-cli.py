#!/usr/bin/env python3

"""Checkout wrapper.

The project is packaged under `src/awsns`. This wrapper allows running
`./awsns-cli.py --suffix ... --zone ...` from a fresh checkout.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from awsns.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
