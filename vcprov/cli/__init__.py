"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import VCProvModalCLI, main

__all__ = ['VCProvModalCLI', 'main']
