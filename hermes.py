#!/usr/bin/env python3
"""
Hermes - The Swift Port Scanner

Finds open ports across hosts, CIDR blocks and host files in seconds,
ready to hand to deeper tooling.

Usage:
    python hermes.py -a 192.168.1.0/24 -p 1-1000
    python hermes.py -a example.com --top --scan-order random
"""

import sys

from hermes.main import main

if __name__ == "__main__":
    sys.exit(main())
