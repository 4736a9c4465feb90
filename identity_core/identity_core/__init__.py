"""Identity and sensitive-data protection core: field encryption, credentials, subscriptions."""

__version__ = "0.1.0"
