"""Shared infrastructure for the notifications service."""
