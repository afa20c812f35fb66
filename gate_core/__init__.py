"""
Light Gate Timing Core Package.

Two-node elapsed-time measurement between two ultrasonic light gates:
a Controller node (first gate + traffic-light sequencing) and a Timer
node (second gate + result display).

Package structure:
- proto: Line-oriented command vocabulary and codec
- sensing: Sample filtering and gate calibration
- domain: Controller and Timer state machines
- io: Session link (transport, handshake, heartbeat), device interfaces, measurement log
- metrics: Diagnostics counters, histograms, timing statistics
"""

__version__ = "0.2.0"
__author__ = "Light Gate Team"
