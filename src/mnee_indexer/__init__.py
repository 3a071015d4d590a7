"""
MNEE commerce indexer.

Mirrors OrderPlaced / OrderRefunded events of the MNEE commerce contract into a
relational store that the storefront API reads from.
"""

__version__ = "0.1.0"
