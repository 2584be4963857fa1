"""
spatch - SSH bastion gateway

Clients authenticate once against the gateway, pick one of the backends
they are granted from a menu, and get their shell relayed to it using
backend-specific credentials.
"""

__version__ = "1.0.0"
