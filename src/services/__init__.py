"""
Service layer for the GPS stream engine.

Services:
- runner: gps-worker process entry point (argparse, signals, health check)
"""

from src.services.runner import build_parser, check, main, run

__all__ = [
    "build_parser",
    "check",
    "main",
    "run",
]
