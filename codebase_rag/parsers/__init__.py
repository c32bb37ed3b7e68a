"""Source discovery and chunking."""

from __future__ import annotations
