"""LLM API Gateway Layer.

Provides async infrastructure for dispatching chat requests to LLM
vendors with:
  - Capability Registry & Negotiator (graceful feature downgrade)
  - Base-URL Resolver & Validator (HTTPS, SSRF protection, allow-lists)
  - Retry Executor (timeouts, Retry-After, exponential backoff with jitter)
  - Vendor-Specific Adapters (buffered and streaming)
  - Response Normalizer (unified DTO)
"""
