#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1",
# ]
# ///

"""Entry point for the verse video HTTP backend."""

from __future__ import annotations

import sys

from backend.server import main


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
