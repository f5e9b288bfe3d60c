"""
Competitive content discovery and ranking for YouTube niches.

Searches a niche for competitor videos, ranks them with a composite
performance/relevance score, matches them against a draft concept by
embedding similarity and drives the whole thing through a resumable
seven-stage research workflow.
"""

__version__ = "0.1.0"
