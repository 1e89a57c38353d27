"""
Scripts for DoseKeeper
Utility scripts for seeding and periodic engine runs
"""

from .seed_data import seed_demo_user
from .run_engine_tick import run_tick

__all__ = [
    "seed_demo_user",
    "run_tick"
]
