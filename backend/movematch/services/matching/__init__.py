from __future__ import annotations

from .candidates import CandidateGenerator, default_resolver
from .config import reset_cache
from .data import load_clients, load_moves, load_open_moves, load_open_requests, next_sequence
from .lifecycle import accept, complete, reject
from .references import parse_reference, resolve_reference

__all__ = [
    'CandidateGenerator',
    'default_resolver',
    'reset_cache',
    'load_clients',
    'load_moves',
    'load_open_moves',
    'load_open_requests',
    'next_sequence',
    'accept',
    'reject',
    'complete',
    'parse_reference',
    'resolve_reference',
]
