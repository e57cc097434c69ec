# genmeter/auth/__init__.py
"""
Caller identity for genmeter.

- identity.py: Identity model built from gateway-forwarded headers
"""
from genmeter.auth.identity import Identity

__all__ = ["Identity"]
