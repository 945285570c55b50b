"""
Dispatch Engine - Ride-to-Driver Assignment

Matches incoming ride requests to the best available driver using
multi-factor scoring, corrects the ranking for fleet load, and supports
manual and emergency overrides with a full audit trail.

Modules:
    - core: Candidate filtering, factor scoring, load balancing, dispatch
    - oracles: Traffic, passenger-affinity and surge lookups
    - overrides: Manual/emergency reassignment
    - store: In-memory and Redis record stores
    - metrics: Operational aggregates
"""

from .engine import DispatchEngine, dispatch_ride, NO_DRIVERS_MESSAGE

__version__ = "1.0.0"

__all__ = ["DispatchEngine", "dispatch_ride", "NO_DRIVERS_MESSAGE"]
