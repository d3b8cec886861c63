"""Adapters: external integrations for the change detection engine.

Contains:
- database.py      - change and registry database engines
- tables.py        - SQLAlchemy tables of the change database
- repositories.py  - SqlChangeRepository and SqlSnapshotStore
- registry.py      - SqlEntitySource over the registry tables
- memory.py        - in-memory implementations of the core protocols
- kafka.py         - ChangeEventPublisher
"""

__all__: list[str] = []
