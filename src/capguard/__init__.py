"""
capguard - per-project hard caps, abuse detection and suspension.

Tracks configured usage limits for each hosted project, evaluates usage
against those limits and against anomaly signals, and suspends projects
when a violation is confirmed.
"""

__version__ = "0.1.0"
