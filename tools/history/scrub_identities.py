#!/usr/bin/env python3
"""Standalone identity sanitizer CLI entrypoint."""

from scrubber.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
