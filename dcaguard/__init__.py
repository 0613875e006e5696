"""DCA strategy guard modules.

This package contains the building blocks of the execution guard:

- automation: strategy rules, the execution guard, the ledger and the scheduler
- execution: signing gateway adapters (simulated by default)
- policies: remote policy registration (best-effort, creation time only)
- persistence: persistence boundary (interfaces)
- storage: in-memory and SQL implementations of the persistence interfaces
"""
