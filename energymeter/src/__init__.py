"""
Edge daemon package for Eastron energy meters.

Polls SDM630/SDM120/SDM72 meters over Modbus TCP, decodes register values into
measurements, maps them onto named output metrics, and derives daily import and
export counters from the meter's lifetime energy totals.

CHANGELOG:
- 2026-10-05: Initial creation

TODO:
- None
"""
