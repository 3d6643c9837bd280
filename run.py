#!/usr/bin/env python3
"""
Entry point for the tierkeeper position engine.
Equivalent to the `tierkeeper` console script.
"""
from tierkeeper.cli import app

if __name__ == "__main__":
    app()
