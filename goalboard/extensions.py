"""
Shared client instances.

Importing this module is always safe: redis.from_url() only builds a
connection pool and does not connect until the first command.
"""
import redis

from goalboard.config import REDIS_URL

# ── Redis ─────────────────────────────────────────────────────────────────────
redis_client = redis.from_url(REDIS_URL, decode_responses=True)
