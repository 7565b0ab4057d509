"""Durable local storage: layered document tables and the pending-write queue."""
