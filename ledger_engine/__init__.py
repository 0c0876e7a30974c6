"""
Ledger Engine

A transactional money-transfer engine: every transfer atomically records a
transfer row, two balancing entries and two balance updates, with a fixed
lock-acquisition order so concurrent transfers never deadlock.
"""

__version__ = "1.0.0"
