"""
Test suite for the generation queue.

Unit tests live in ``unit/``; ``integration/`` exercises the service and API
end to end against the in-memory store.
"""
