#!/usr/bin/env python3
"""
ARK: Survival Ascended fleet launcher

Usage: python launcher.py <command> [...]   (see `python launcher.py --help`)
"""

import sys

from asa_launcher.cli import main

if __name__ == "__main__":
    sys.exit(main())
