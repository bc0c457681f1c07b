"""Appliance installer (golden image builder + device convergence).

Core design goals:
- Immutable golden image with a writable overlay root
- Idempotent, ordered device convergence
- Scoped acquisition of mounts and loop devices
- Safe in-place rollout of the appliance binary
- Centralized logging
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
