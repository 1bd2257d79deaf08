"""Coordination and persistence layer for cooperating agents.

Agents share work through a claimable task queue, record resumable progress
in a checkpoint log, keep shared state in a versioned key-value store, and
receive notices about newly approved learnings.
"""

__version__ = "1.0.0"
