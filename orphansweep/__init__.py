"""Find Azure role assignments whose principal no longer exists and remove them safely.

Two phases joined by a reviewed JSON file: `scan` (read-only, parallel across
subscriptions, sequential across management groups) and `remove` (sequential,
re-verified, guarded against removing the last subscription administrator).
"""
