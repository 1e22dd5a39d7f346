"""
Storage backends for rate limit buckets.

This package contains:
- InMemoryBucketStore: per-process buckets with per-key locking
- RedisBucketStore: shared buckets with Lua compare-and-set
- FailoverBucketStore: Redis first, in-memory when Redis is unreachable
"""

from __future__ import annotations

from traffic_shaper.infra.bucket_store import (
    BucketRecord,
    BucketStore,
    InMemoryBucketStore,
    build_bucket_store,
)
from traffic_shaper.infra.redis_bucket_store import FailoverBucketStore, RedisBucketStore

__all__ = [
    "BucketRecord",
    "BucketStore",
    "FailoverBucketStore",
    "InMemoryBucketStore",
    "RedisBucketStore",
    "build_bucket_store",
]
