"""Adapters between the messaging core and the registry backend.

Wire mapping, the REST client and the push transport live here so the core
never imports aiohttp or socketio.
"""
