"""Ticket Context Engine.

Traverses an issue tracker's relationship graph from a root ticket, matches
code-host pull requests to the related tickets with confidence scoring, and
aggregates both into a relevance-ranked, size-bounded context bundle.
"""

__version__ = "0.1.0"
