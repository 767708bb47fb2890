"""Shared infrastructure for identity resolution.

Provides the thread-safe TTL cache, the blocking sliding-window rate limiter,
the bounded worker pool, structlog configuration, and Prometheus metrics used
by the directory resolvers and the coordinator.
"""
