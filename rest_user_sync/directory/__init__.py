"""
Remote directory clients.

The fetch port lives in ``base``; ``http_client`` provides the REST implementation.
"""
