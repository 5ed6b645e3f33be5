"""Presence and broadcast engine.

Connections join named rooms over WebSocket. The engine keeps per-participant
reference counts so that several tabs of one user are present once, fans
messages out through bounded per-connection queues, and layers typing
indicators and reactions on top of room membership.
"""
