"""Local synchronization core: sync engine, rate-limit state and change poller.

Reads go through the local store and only hit the remote when the cached
snapshot is stale. Writes go to the remote first, then into the store
(write-through). Remote changes are detected by a cheap conditional poll.
"""
