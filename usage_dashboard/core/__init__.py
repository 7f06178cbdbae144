"""
Core modules for the usage dashboard.

This package contains pricing resolution, usage aggregation, result
caching and the hybrid execution of the aggregation pass.
"""
