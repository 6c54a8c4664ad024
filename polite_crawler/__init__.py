"""
Polite Crawler

Core engine of a polite, distributed web crawler: URL frontier,
politeness gate, robots.txt cache and URL-level deduplication.
"""

__version__ = "1.0.0"
__description__ = "Scheduling, politeness and deduplication core for a distributed web crawler"
