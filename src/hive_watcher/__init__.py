"""
Hive Watcher - podping notifications from the Hive blockchain

A small sidecar service that follows the chain, writes every podping
notification to daily NDJSON files and forwards it to product analytics.
"""

__version__ = "0.1.0"
