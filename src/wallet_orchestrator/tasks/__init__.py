"""
Task subsystem.

Components:
- task_models.py: data structures (Task, TaskStatus, TaskSnapshot, WalletRef)
- task_registry.py: insertion-ordered in-memory registry
- task_scheduler.py: admission control + worker lifecycle
- task_api.py: small high-level helpers used by the console front-end
"""
