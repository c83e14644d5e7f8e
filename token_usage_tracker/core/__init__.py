"""
Core modules for the Token Usage Tracker.

This package contains token counting, the generation lifecycle state
machine, price resolution, import/export and the reference clock.
"""
