"""Ywinby keeps one share of a split secret and releases it to a recipient
once the owner stops checking in."""

__version__ = "0.1.0"
