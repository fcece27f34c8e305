"""
@file __init__.py
@brief Container and Kubernetes threat scanner package initialization

@details
This package contains all modules for the threat scanning system,
organized by functional areas:
- core: Data model, errors, scan orchestration and CLI entry point
- acquisition: SSH-based snapshot collection from Docker and Kubernetes hosts
- caching: Configuration constants, vulnerability feed client and SQLite cache
- matching: Version-range matching, configuration rules and version checks
- reporting: Threat aggregation, terminal, JSON and HTML report output
"""

__version__ = "1.0.0"
