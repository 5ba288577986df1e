#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/middleware_manager`. This wrapper allows
running `./middleware-manager.py` from a fresh checkout without installing.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from middleware_manager.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
