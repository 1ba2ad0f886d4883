"""ListingMatch REST API package.

Mount point: /api/v1/
Actor:       X-Actor-Id header, set by the authenticating gateway
"""
