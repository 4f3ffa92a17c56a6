"""Komunitin notifications service."""
