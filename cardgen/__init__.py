"""
AI flashcard generation service.

Turns free text into reviewed flashcard candidates through a resilient
provider pipeline (circuit breaker, retries, response validation, mock
fallback) and persists accepted cards with duplicate detection.
"""

__version__ = '1.0.0'
