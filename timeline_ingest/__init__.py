"""
Scheduled content ingestion: source connectors, near-duplicate merging and
the circuit-breaker/retry plumbing that keeps a run alive when sources flake.
"""

__version__ = "0.3.0"
