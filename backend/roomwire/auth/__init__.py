"""Handshake authentication (shared-secret JWT or CMS identity lookup).

Verifiers:
    - JWTIdentityVerifier: Checks HMAC-signed tokens locally.
    - HTTPIdentityVerifier: Asks the CMS "who am I" endpoint.
"""
