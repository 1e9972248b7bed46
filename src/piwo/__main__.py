#!/usr/bin/env python3
"""Allow `python -m piwo ...`."""

from piwo.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
