"""Authentication module.

Verifies the JWT credential carried by WebSocket upgrades and HTTP requests.

Services:
    - IdentityVerifier: token -> Identity, or AuthFailure.
"""
