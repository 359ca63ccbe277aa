"""Baton: message gateway and control plane for a single hosted agent session."""
