"""Request-scoped services orchestrating the identity core."""
