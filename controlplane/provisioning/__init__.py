"""Pulumi resources owned by the controller itself (state table, topic, volume)."""
