"""Operator-facing console interaction."""
