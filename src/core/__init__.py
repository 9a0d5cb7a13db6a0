"""Core domain package for the registry messaging client.

Core contains channel resolution, history loading, reconciliation and
permission logic without any HTTP or socket-specific code, keeping the
business logic portable.
"""
