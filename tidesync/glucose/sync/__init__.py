"""Sync machinery for tidesync.

Modules:
    generation     — SyncGeneration counter and cancellation tokens
    dedup          — Dedup of remote samples by external id
    pending_queue  — Durable FIFO of local changes awaiting upload
    state          — Persisted cursor, anchors and status counters
    downloader     — Tidepool → local store sync attempts
    backfill       — Backward block walk for long historical downloads
    upload_payload — Manifest and record builders for uploads
    uploader       — Local store → Tidepool observer, queue and drain
    scheduler      — Periodic download + drain loop
"""
