"""
taskforge: budgeted orchestration of autonomous coding-agent tasks.

Purpose
- Package root. Drives declarative task graphs through a bounded
  exec/validate/repair loop against a git repository.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
