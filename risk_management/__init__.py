"""
Risk Management Package.

Placement governance between signal generation and execution.

Modules:
- placement_governor: position limits, exposure cap, duplicate
  suppression and in-flight reservation
"""

from .placement_governor import (
    GovernanceDecision,
    GovernanceLimit,
    PlacementGovernor,
    build_position_views,
)


__all__ = [
    "GovernanceDecision",
    "GovernanceLimit",
    "PlacementGovernor",
    "build_position_views",
]
