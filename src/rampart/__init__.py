"""
Rampart - request-defense and resilience layer.

Throttles and locks out abusive callers, scores and correlates security
events, and retries and recovers failed asynchronous operations.
"""

__version__ = "0.1.0"
