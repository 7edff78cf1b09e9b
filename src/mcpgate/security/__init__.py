"""Security primitives: audit log, rate limiting, login sessions."""
