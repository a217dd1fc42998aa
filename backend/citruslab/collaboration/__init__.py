"""Collaboration module: collaborators, share links and the presence roster.

Services:
    - CollaborationService: owner-gated management and presence mutation.
    - CollaborationStore: DuckDB persistence of aggregates and messages.
"""
