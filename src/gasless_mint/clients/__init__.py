"""
Outbound relay access: envelope submission with bounded retries and status
tracking until a terminal outcome.
"""

from .relay_client import RelayClient
from .tracker import StatusTracker

__all__ = ["RelayClient", "StatusTracker"]
