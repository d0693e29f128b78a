"""Rasa Server: self-hosted movie catalog organised by mood."""

from __future__ import annotations

__version__ = "1.0.0"
