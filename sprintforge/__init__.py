"""
SprintForge
===========

Autonomous sprint planning and task orchestration: a dependency-aware task
scheduler, a capacity-bounded sprint planner, a learning engine that earns
auto-approval from human decisions, and per-session agent memory.
"""

__version__ = "0.1.0"
