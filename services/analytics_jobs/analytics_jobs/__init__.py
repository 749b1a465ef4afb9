"""Durable, idempotent analytics job pipeline on Redis with an inline fallback."""
