"""Collaborator services and the repair plan executor."""
