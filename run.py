#!/usr/bin/env python3
"""Convenience runner for the StravAI sync.

Usage:
    python run.py sync
    python run.py serve --port 8080
"""
from stravai.main import main

if __name__ == "__main__":
    raise SystemExit(main())
