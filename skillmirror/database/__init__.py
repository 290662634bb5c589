"""Persistence layer: ORM models."""
