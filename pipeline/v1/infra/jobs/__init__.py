"""
Background job engine for the photo pipeline.

This package provides:
- A durable job store with atomic priority-ordered claims
- A worker loop with priority lanes, heartbeats and stale-job recovery
- A scheduler that enqueues periodic maintenance work
- Registry-based handlers that are resumable and cooperatively cancellable
- An in-process event bus relayed to clients over SSE
"""
