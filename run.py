#!/usr/bin/env python3
"""
Convenience wrapper to run wormwatch.

Usage: python3 run.py --topology grid --nodes 36 --wormhole

Or use the module directly:
    python3 -m wormwatch --topology grid --nodes 36 --wormhole
"""

from wormwatch.__main__ import main

if __name__ == "__main__":
    main()
