"""
Shipyard - Autonomous issue-to-pipeline daemon.

This package watches an issue tracker for labeled work, runs each issue as an
isolated agent pipeline process, and keeps the fleet of running jobs healthy
with progress sensing, failure classification and delivery metrics.
"""

__version__ = "0.1.0"
