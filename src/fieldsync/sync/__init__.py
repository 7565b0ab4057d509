"""Replay of queued writes and its triggers."""
