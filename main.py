#!/usr/bin/env python3
"""
@file main.py
@brief Threat Scanner - Main entry point

This is the main entry point for the threat scanner application.
It imports and runs the core application logic from threatscope/core/main.py.
"""

import sys
from threatscope.core.main import main

if __name__ == "__main__":
    sys.exit(main())
