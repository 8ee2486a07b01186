"""
Auto Trailing Stop-Loss engine.

Tracks holdings, ratchets a stop up behind the high-water mark and sells
at market once price falls through it.
"""

__version__ = "1.0.0"
