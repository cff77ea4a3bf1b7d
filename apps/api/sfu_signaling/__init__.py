"""Signaling orchestrator for a selective forwarding unit."""
