"""
migvm - a register-machine VM with live migration and snapshots.
"""

__version__ = "0.1.0"
