"""Shared listening sessions kept in lockstep over WebSocket."""
