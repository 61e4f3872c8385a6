"""SkyProxy Core - routing, request shaping and upstream dispatch primitives.

Modules:
- router: model alias resolution
- transformer: per-provider field whitelist and cache rewrite
- pool: one keep-alive connection pool per provider origin
- concurrency: per-provider FIFO concurrency limiter
- http_client: non-streaming dispatch with retries
- streaming: SSE relay
"""
