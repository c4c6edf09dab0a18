"""
CLI runner module.

Provides commands:
- init-config: Write a starter config
- run: Queue driver and document job loop until SIGINT/SIGTERM
- enqueue: Register an uploaded file for processing
- status: Pipeline status of a document (or overall statistics)
- snapshot / rebuild: Monthly analytics
- dead-letters / requeue: Remediation
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
