"""Europass Qualification Dataset Register provider."""

from .provider import EuropassProvider

__all__ = ["EuropassProvider"]
