"""
MongoDB slow queries plugin for Mackerel.

Samples the MongoDB profiler collection over the last minute and reports the
number of slow operations with their total and average duration.
"""

__version__ = "0.1.0"
