"""Typed records and their durable store."""

from .store import StateStore

__all__ = ["StateStore"]
