"""
Core types.

- models.py: persisted documents (Task, SubtaskResult, GlobalState, CollectionItem, Stats)
- ports.py: Protocols the scheduler and stores depend on
- state.py: AppState built by the composition root
"""
