"""
jobtester - end-to-end test orchestrator for remote platform jobs.
"""

__version__ = "0.1.0"
