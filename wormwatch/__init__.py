"""
wormwatch - on-demand ad-hoc routing with wormhole detection.

This package provides a distance-vector routing engine for mobile ad-hoc
networks whose route replies are cross-checked against one-hop neighbor
lists to catch out-of-band tunnels, plus an in-memory network simulator
to measure how well that works.
"""

__version__ = "1.0.0"
__author__ = "wormwatch contributors"
