"""HTTP boundary for the identity core: auth, billing and payment webhooks."""

__version__ = "0.1.0"
