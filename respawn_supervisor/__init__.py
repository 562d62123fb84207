"""Respawn supervisor: keeps coding-agent sessions working by respawning them when idle."""
