"""
Task subsystem.

Components:
- task_models.py: data structures (Task, TaskStatus, TaskPatch, QueueState)
- task_store.py: JSON snapshot storage for the queue state
- task_queue.py: ordered in-memory queue with the active workspace pointer
- task_executor.py: agent command rendering and the subprocess executor
- task_processor.py: single-worker loop with retries, backoff and cancellation
- task_events.py: lifecycle events and their fan-out to connectors
- task_api.py: small high-level helpers used by commands and connectors
"""
