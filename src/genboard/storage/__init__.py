"""
Persistence.

- atomic.py: crash-safe JSON writes
- task_store.py: task / global state / collection documents
- image_store.py: content-addressed image blobs
- janitor.py: reference-counted cleanup and the debounced orphan sweep
"""
