"""
Local Queue — durable fallback for side effects the remote store rejected.

- Relay components ENQUEUE entries when a store write fails
- ReconciliationWorker REPLAYS them and removes each one that succeeds
- Backed by a single JSON file per instance
"""
