#!/usr/bin/env python3
"""
Main entry point for debugger compatibility.

The application entry point is studycal.__main__:main and can be run
using: python -m studycal
"""

import sys

if __name__ == "__main__":
    from studycal.__main__ import main

    sys.exit(main())
