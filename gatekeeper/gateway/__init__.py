"""
Gatekeeper - Gateway

Request-level concerns that run before any handler: request ids, security
headers and rate limiting.
"""
