"""
                Tableside Ordering

Session-scoped cart and order backend for QR table ordering,
with desk occupancy tracking for the admin panel.

License: MIT
"""

__version__ = "1.0.0"
