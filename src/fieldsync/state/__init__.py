"""Merge layer.

Pure functions that combine the base layer, both overlays and any queued
writes into one deterministic view per entity.
"""
