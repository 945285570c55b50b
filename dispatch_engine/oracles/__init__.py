"""
Dispatch Engine External Lookups

Traffic, passenger-affinity and surge sources, plus the service that
queries them in parallel with neutral fallback.
"""

from .affinity import AffinityScorer, HttpAffinityScorer, NeutralAffinityScorer
from .signal_service import ExternalSignalService, ExternalSignals, SignalSource
from .surge import HttpSurgeLookup, NoSurgeLookup, SurgeLookup
from .traffic import HttpTrafficScorer, NeutralTrafficScorer, TrafficScorer

__all__ = [
    "AffinityScorer",
    "HttpAffinityScorer",
    "NeutralAffinityScorer",
    "ExternalSignalService",
    "ExternalSignals",
    "SignalSource",
    "HttpSurgeLookup",
    "NoSurgeLookup",
    "SurgeLookup",
    "HttpTrafficScorer",
    "NeutralTrafficScorer",
    "TrafficScorer",
]
